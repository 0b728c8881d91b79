"""Data models for the dispatch core: agents, orders, assignments and API payloads."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps from clients are taken as UTC so they compare with stored ones.
UtcDatetime = Annotated[datetime, AfterValidator(assume_utc)]


class CamelModel(BaseModel):
    """Canonical snake_case fields, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _LenientEnum(str, Enum):
    """Accepts 'In Progress', 'in_progress' and 'InProgress' alike."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.replace(" ", "").replace("_", "").lower()
            for member in cls:
                if member.value.lower() == key:
                    return member
        return None


class AgentStatus(_LenientEnum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    BUSY = "Busy"


class DeliveryStatus(_LenientEnum):
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    IN_TRANSIT = "InTransit"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class AssignmentStatus(_LenientEnum):
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset(
    {AssignmentStatus.COMPLETED, AssignmentStatus.FAILED, AssignmentStatus.CANCELLED}
)


class Priority(_LenientEnum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    URGENT = "Urgent"


# --- Agents ---


class Agent(CamelModel):
    """A delivery agent with capacity and a transactionally maintained load counter."""

    agent_id: str = Field(..., description="Stable external identifier (DA01, DA02, ...)")
    name: str
    email: str
    phone_number: str
    location: str
    status: AgentStatus = AgentStatus.ACTIVE
    capacity: Optional[int] = Field(None, ge=1, description="Max concurrent assignments; None = unbounded")
    current_load: int = Field(default=0, ge=0, description="Count of Assigned/InProgress assignments")
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    completed_deliveries: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def at_capacity(self) -> bool:
        return self.capacity is not None and self.current_load >= self.capacity


class AgentCreate(CamelModel):
    """Create payload. Required fields are checked by the registry so every violation is reported together."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    status: AgentStatus = AgentStatus.ACTIVE
    capacity: Optional[int] = None
    rating: float = 0.0


class AgentUpdate(CamelModel):
    """Partial update; only fields that are set are merged."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    status: Optional[AgentStatus] = None
    capacity: Optional[int] = None
    rating: Optional[float] = None


class LoadDrift(CamelModel):
    agent_id: str
    recorded_load: int
    actual_load: int


# --- Orders ---


class OrderItem(CamelModel):
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0.0)


class Order(CamelModel):
    """An order as consumed by dispatch. Full order semantics belong to checkout."""

    order_id: str
    customer_name: str = ""
    customer_address: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    total_amount: float = 0.0
    items: list[OrderItem] = Field(default_factory=list)
    delivery_status: DeliveryStatus = DeliveryStatus.UNASSIGNED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderCreate(CamelModel):
    """Intake payload from the checkout collaborator."""

    order_id: str = Field(..., min_length=1)
    customer_name: str = ""
    customer_address: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    total_amount: Optional[float] = Field(None, ge=0.0, description="Defaults to sum of price * quantity")
    items: list[OrderItem] = Field(default_factory=list)
    created_at: Optional[UtcDatetime] = None


# --- Assignments ---


class StatusChange(CamelModel):
    status: AssignmentStatus
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"
    reason: Optional[str] = None


class Assignment(CamelModel):
    """One order -> agent relation. At most one per order may be active."""

    assignment_id: str
    order_id: str
    agent_id: str
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    priority: Priority = Priority.NORMAL
    notes: str = ""
    assigned_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    status_history: list[StatusChange] = Field(default_factory=list)
    reassigned_from: Optional[str] = None
    reassignment_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class AssignmentCreate(CamelModel):
    order_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1, alias="deliveryAgentId")
    priority: Priority = Priority.NORMAL
    notes: str = ""
    actor: str = "admin"


class AssignmentPatch(CamelModel):
    status: Optional[AssignmentStatus] = None
    priority: Optional[Priority] = None
    notes: Optional[str] = None
    agent_id: Optional[str] = Field(None, alias="deliveryAgentId")
    reason: Optional[str] = None
    actor: str = "admin"


class AssignmentUpdate(AssignmentPatch):
    order_id: str = Field(..., min_length=1)


class AssignmentFilter(CamelModel):
    status: Optional[AssignmentStatus] = None
    agent_id: Optional[str] = None
    priority: Optional[Priority] = None
    assigned_from: Optional[UtcDatetime] = None
    assigned_to: Optional[UtcDatetime] = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1)


class AssignmentPage(CamelModel):
    items: list[Assignment]
    total: int
    offset: int
    limit: int


class BulkUpdateRequest(CamelModel):
    order_ids: list[str] = Field(..., min_length=1)
    updates: AssignmentPatch


class ErrorInfo(CamelModel):
    code: str
    detail: str


class BulkItemResult(CamelModel):
    order_id: str
    ok: bool
    assignment: Optional[Assignment] = None
    error: Optional[ErrorInfo] = None


class BulkUpdateResult(CamelModel):
    results: list[BulkItemResult]
    succeeded: int
    failed: int


class AssignmentStatistics(CamelModel):
    total_assignments: int
    active_assignments: int
    by_status: dict[str, int]
    unassigned_orders: int
    completion_rate: float = Field(..., description="Completed / total, as a percentage")
    average_delivery_minutes: Optional[float] = None


class AttentionItem(CamelModel):
    assignment: Assignment
    reasons: list[str]


class AgentPerformance(CamelModel):
    """Per-agent delivery record over a window of assignments."""

    agent_id: str
    agent_name: str = ""
    total_assignments: int
    completed: int
    failed: int
    cancelled: int
    in_progress: int
    active: int
    total_reassignments: int
    completion_rate: float = Field(..., description="Completed / total, as a percentage")
    average_delivery_minutes: Optional[float] = None


class AssignmentSearch(CamelModel):
    """Free-text search. Text fields match case-insensitively anywhere in the value."""

    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    agent_name: Optional[str] = None
    status: Optional[AssignmentStatus] = None
    priority: Optional[Priority] = None
    assigned_from: Optional[UtcDatetime] = None
    assigned_to: Optional[UtcDatetime] = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1)


class ExportFormat(_LenientEnum):
    JSON = "json"
    CSV = "csv"


class ExportRow(CamelModel):
    """One flattened assignment joined with its order and agent, as written to exports."""

    order_id: str
    customer_name: str = ""
    customer_address: str = ""
    customer_phone: str = ""
    agent_name: str = ""
    agent_id: str
    status: AssignmentStatus
    priority: Priority
    assigned_date: datetime
    completed_date: Optional[datetime] = None
    total_amount: float = 0.0
    item_count: int = 0
    notes: str = ""
    delivery_time_minutes: Optional[int] = None
