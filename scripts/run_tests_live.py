#!/usr/bin/env python3
"""
Start the dispatch API on a spare port, run the live API tests against it, then stop it.
Usage: python scripts/run_tests_live.py [extra pytest args]
(Run from project root with venv activated.)
"""

import os
import subprocess
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.http_client import DispatchClient

HOST = "127.0.0.1"
PORT = 8765
BASE_URL = f"http://{HOST}:{PORT}"


def wait_until_up(client, seconds=10):
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        if client.is_up():
            return True
        time.sleep(0.5)
    return False


def main():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    env = dict(os.environ, SEED_DEMO_DATA="false", BASE_URL=BASE_URL)
    env.setdefault("DISPATCH_STORE", "memory")
    server = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "dispatch_core.main:app", "--host", HOST, "--port", str(PORT)],
        cwd=root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        if not wait_until_up(DispatchClient(BASE_URL)):
            print(f"Dispatch API did not come up on {BASE_URL}.")
            return 1
        return subprocess.run(
            [sys.executable, "-m", "pytest", "tests/test_live_api.py", "-v", *sys.argv[1:]],
            cwd=root,
            env=env,
        ).returncode
    finally:
        server.terminate()
        server.wait(timeout=5)


if __name__ == "__main__":
    sys.exit(main())
