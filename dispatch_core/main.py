"""REST API for the dispatch core: agents, the unassigned-order pool and assignments."""

import csv
import io
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from itertools import islice
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic.alias_generators import to_camel

from dispatch_core.activity import get_recent as activity_get_recent, start_redis_subscriber
from dispatch_core.config import (
    CORS_ORIGINS,
    DEFAULT_PAGE_LIMIT,
    DISPATCH_STORE,
    LOG_LEVEL,
    MAX_PAGE_LIMIT,
    SEED_DEMO_DATA,
)
from dispatch_core.errors import DispatchError, InvariantViolation, ValidationError
from dispatch_core.models import (
    Agent,
    AgentCreate,
    AgentPerformance,
    AgentStatus,
    AgentUpdate,
    Assignment,
    AssignmentCreate,
    AssignmentFilter,
    AssignmentPage,
    AssignmentSearch,
    AssignmentStatistics,
    AssignmentStatus,
    AssignmentUpdate,
    AttentionItem,
    BulkUpdateRequest,
    BulkUpdateResult,
    ExportFormat,
    ExportRow,
    LoadDrift,
    Order,
    OrderCreate,
    Priority,
    assume_utc,
    utcnow,
)
from dispatch_core.services.dispatch_engine import get_engine
from dispatch_core.services.seed import seed_mock_data

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if DISPATCH_STORE == "redis":
        start_redis_subscriber()
    if SEED_DEMO_DATA:
        try:
            seed_mock_data(get_engine())
        except Exception as e:
            logger.warning("Could not seed demo data (store down?): %s", e)
    yield


app = FastAPI(
    title="Dispatch Core",
    description="Assigns delivery orders to agents and keeps agent load consistent.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if isinstance(exc, InvariantViolation):
        logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.detail)
    payload = exc.to_payload()
    if "errors" in payload:
        payload["errors"] = [{**e, "field": to_camel(e["field"])} for e in payload["errors"]]
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report every malformed field as a 400, same shape as service-level validation errors."""
    violations: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        violations.setdefault(".".join(loc) or "body", err.get("msg", "invalid"))
    error = ValidationError.from_fields(violations)
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return assume_utc(value) if value is not None else None


# --- Agents ---


@app.get("/agents", response_model=list[Agent])
def list_agents_endpoint(
    status: Optional[AgentStatus] = None,
    location: Optional[str] = None,
) -> list[Agent]:
    """List agents ordered by agentId, optionally filtered by status and location."""
    return get_engine().list_agents(status=status, location=location)


@app.post("/agents", status_code=201, response_model=Agent)
def create_agent_endpoint(payload: AgentCreate) -> Agent:
    return get_engine().create_agent(payload)


@app.get("/agents/loads/audit", response_model=list[LoadDrift])
def audit_loads_endpoint() -> list[LoadDrift]:
    """Agents whose currentLoad disagrees with their active assignments (empty when consistent)."""
    return get_engine().audit_loads()


@app.get("/agents/{agent_id}", response_model=Agent)
def get_agent_endpoint(agent_id: str) -> Agent:
    return get_engine().get_agent(agent_id)


@app.put("/agents/{agent_id}", response_model=Agent)
def update_agent_endpoint(agent_id: str, payload: AgentUpdate) -> Agent:
    return get_engine().update_agent(agent_id, payload)


@app.delete("/agents/{agent_id}")
def delete_agent_endpoint(agent_id: str) -> dict:
    """Delete an agent. 409 while it still holds active assignments."""
    get_engine().delete_agent(agent_id)
    return {"status": "deleted", "agentId": agent_id}


@app.get("/agents/{agent_id}/assignments", response_model=list[Assignment])
def agent_assignments_endpoint(agent_id: str) -> list[Assignment]:
    return get_engine().agent_assignments(agent_id)


# --- Orders ---


@app.post("/orders", status_code=201, response_model=Order)
def enqueue_order_endpoint(payload: OrderCreate) -> Order:
    """Intake hook: register a checked-out order as eligible for dispatch."""
    return get_engine().enqueue_order(payload)


@app.get("/orders/unassigned", response_model=list[Order])
def unassigned_orders_endpoint(limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)) -> list[Order]:
    """Orders eligible for dispatch, oldest first."""
    return list(islice(get_engine().list_unassigned(), limit))


@app.get("/orders/{order_id}", response_model=Order)
def get_order_endpoint(order_id: str) -> Order:
    return get_engine().get_order(order_id)


# --- Assignments ---


@app.get("/assignments", response_model=AssignmentPage)
def list_assignments_endpoint(
    status: Optional[AssignmentStatus] = None,
    agent_id: Optional[str] = Query(None, alias="agentId"),
    priority: Optional[Priority] = None,
    assigned_from: Optional[datetime] = Query(None, alias="assignedFrom"),
    assigned_to: Optional[datetime] = Query(None, alias="assignedTo"),
    offset: int = Query(0, ge=0),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
) -> AssignmentPage:
    filters = AssignmentFilter(
        status=status,
        agent_id=agent_id,
        priority=priority,
        assigned_from=assigned_from,
        assigned_to=assigned_to,
        offset=offset,
        limit=limit,
    )
    return get_engine().list_assignments(filters)


@app.post("/assignments", status_code=201, response_model=Assignment)
def create_assignment_endpoint(payload: AssignmentCreate) -> Assignment:
    return get_engine().assign(
        payload.order_id,
        payload.agent_id,
        priority=payload.priority,
        notes=payload.notes,
        actor=payload.actor,
    )


@app.put("/assignments", response_model=Assignment)
def update_assignment_endpoint(payload: AssignmentUpdate) -> Assignment:
    """Change status/priority/notes and/or reassign (deliveryAgentId) the order's active assignment."""
    return get_engine().update_assignment(
        payload.order_id,
        status=payload.status,
        priority=payload.priority,
        notes=payload.notes,
        new_agent_id=payload.agent_id,
        actor=payload.actor,
        reason=payload.reason,
    )


@app.post("/assignments/bulk", response_model=BulkUpdateResult)
def bulk_update_endpoint(payload: BulkUpdateRequest) -> BulkUpdateResult:
    """Apply one patch to many orders; each order succeeds or fails on its own."""
    return get_engine().bulk_update(payload.order_ids, payload.updates)


@app.get("/assignments/statistics", response_model=AssignmentStatistics)
def statistics_endpoint(
    agent_id: Optional[str] = Query(None, alias="agentId"),
    assigned_from: Optional[datetime] = Query(None, alias="assignedFrom"),
    assigned_to: Optional[datetime] = Query(None, alias="assignedTo"),
) -> AssignmentStatistics:
    return get_engine().statistics(
        agent_id=agent_id,
        assigned_from=_utc(assigned_from),
        assigned_to=_utc(assigned_to),
    )


@app.get("/assignments/attention", response_model=list[AttentionItem])
def attention_endpoint() -> list[AttentionItem]:
    """Failed, frequently reassigned, or stale assignments."""
    return get_engine().attention()


@app.get("/assignments/performance", response_model=list[AgentPerformance])
def performance_endpoint(
    agent_id: Optional[str] = Query(None, alias="agentId"),
    assigned_from: Optional[datetime] = Query(None, alias="assignedFrom"),
    assigned_to: Optional[datetime] = Query(None, alias="assignedTo"),
) -> list[AgentPerformance]:
    return get_engine().performance(
        agent_id=agent_id,
        assigned_from=_utc(assigned_from),
        assigned_to=_utc(assigned_to),
    )


@app.get("/assignments/search", response_model=AssignmentPage)
def search_endpoint(
    order_id: Optional[str] = Query(None, alias="orderId"),
    customer_name: Optional[str] = Query(None, alias="customerName"),
    agent_name: Optional[str] = Query(None, alias="agentName"),
    status: Optional[AssignmentStatus] = None,
    priority: Optional[Priority] = None,
    assigned_from: Optional[datetime] = Query(None, alias="assignedFrom"),
    assigned_to: Optional[datetime] = Query(None, alias="assignedTo"),
    offset: int = Query(0, ge=0),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
) -> AssignmentPage:
    query = AssignmentSearch(
        order_id=order_id,
        customer_name=customer_name,
        agent_name=agent_name,
        status=status,
        priority=priority,
        assigned_from=assigned_from,
        assigned_to=assigned_to,
        offset=offset,
        limit=limit,
    )
    return get_engine().search(query)


@app.get("/assignments/export")
def export_endpoint(
    fmt: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    status: Optional[AssignmentStatus] = None,
    agent_id: Optional[str] = Query(None, alias="agentId"),
    assigned_from: Optional[datetime] = Query(None, alias="assignedFrom"),
    assigned_to: Optional[datetime] = Query(None, alias="assignedTo"),
):
    """Flattened assignments as a JSON list, or a CSV attachment with format=csv."""
    rows = get_engine().export_rows(
        status=status,
        agent_id=agent_id,
        assigned_from=_utc(assigned_from),
        assigned_to=_utc(assigned_to),
    )
    records = [row.model_dump(mode="json", by_alias=True) for row in rows]
    if fmt != ExportFormat.CSV:
        return records
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=[to_camel(name) for name in ExportRow.model_fields])
    writer.writeheader()
    writer.writerows(records)
    filename = f"assignments_export_{utcnow().date().isoformat()}.csv"
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/assignments/{order_id}", response_model=Assignment)
def get_assignment_endpoint(order_id: str) -> Assignment:
    return get_engine().get_assignment(order_id)


@app.get("/assignments/{order_id}/history", response_model=list[Assignment])
def assignment_history_endpoint(order_id: str) -> list[Assignment]:
    return get_engine().assignment_history(order_id)


@app.delete("/assignments/{order_id}", response_model=Assignment)
def unassign_endpoint(order_id: str) -> Assignment:
    """Cancel the order's active assignment; the order returns to the unassigned pool."""
    return get_engine().unassign(order_id)


# --- Operations ---


@app.get("/activity")
def get_activity(limit: int = 100) -> dict:
    """Recent dispatch events (assignments created/reassigned/status changes, agent changes)."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_get_recent(limit=limit)}


@app.get("/health")
def health() -> dict:
    out = {"status": "ok"}
    try:
        out["store"] = "ok" if get_engine().store.ping() else "unreachable"
    except Exception as e:
        logger.warning("Store ping failed: %s", e)
        out["store"] = "unreachable"
    return out
