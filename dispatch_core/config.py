"""Configuration for the dispatch core (store backend, locking, pagination, policies)."""

import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Store backend ---
# "memory" keeps everything in-process (tests, single worker); "redis" is the durable backend.
DISPATCH_STORE: str = os.environ.get("DISPATCH_STORE", "memory")
REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))

# --- Keyed locks ---
DISPATCH_LOCK_TIMEOUT_SECONDS: float = float(os.environ.get("DISPATCH_LOCK_TIMEOUT_SECONDS", "5"))
DISPATCH_LOCK_TTL_SECONDS: float = float(os.environ.get("DISPATCH_LOCK_TTL_SECONDS", "30"))

# --- Capacity policy ---
# When set, an Active agent flips to Busy when its load reaches capacity and back to Active below it.
DISPATCH_AUTO_BUSY: bool = _flag("DISPATCH_AUTO_BUSY")

# --- Listing ---
DEFAULT_PAGE_LIMIT: int = int(os.environ.get("DEFAULT_PAGE_LIMIT", "50"))
MAX_PAGE_LIMIT: int = int(os.environ.get("MAX_PAGE_LIMIT", "200"))

# --- Assignments requiring attention ---
ATTENTION_STALE_HOURS: float = float(os.environ.get("ATTENTION_STALE_HOURS", "24"))
ATTENTION_REASSIGNMENT_THRESHOLD: int = int(os.environ.get("ATTENTION_REASSIGNMENT_THRESHOLD", "2"))

# --- Activity log ---
ACTIVITY_MAX_EVENTS: int = int(os.environ.get("ACTIVITY_MAX_EVENTS", "200"))

# --- Startup ---
SEED_DEMO_DATA: bool = _flag("SEED_DEMO_DATA")
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if o.strip()
]
