"""Domain records for approval workflows and bulk bookings."""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import ValidationError

_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def coerce_enum(enum_cls, value, error_cls=ValidationError):
    """Convert ``value`` to ``enum_cls`` or raise ``error_cls``."""
    try:
        return value if isinstance(value, enum_cls) else enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(e.value for e in enum_cls)
        raise error_cls(
            f"Invalid {enum_cls.__name__} {value!r}; expected one of {allowed}"
        ) from exc


class RequestType(str, Enum):
    APPOINTMENT_CANCELLATION = "APPOINTMENT_CANCELLATION"
    REFUND_REQUEST = "REFUND_REQUEST"
    SPECIAL_DISCOUNT = "SPECIAL_DISCOUNT"
    EMERGENCY_BOOKING = "EMERGENCY_BOOKING"
    BULK_BOOKING_APPROVAL = "BULK_BOOKING_APPROVAL"
    CUSTOMER_COMPLAINT = "CUSTOMER_COMPLAINT"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"

    @property
    def is_open(self) -> bool:
        return self in (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class Verdict(str, Enum):
    """Decision an approver can record against a step."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIALLY_COMPLETED = "PARTIALLY_COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Approval workflows


class StepDefinition(BaseModel):
    """Caller-supplied description of one approval step."""

    step_name: str
    description: Optional[str] = None
    approver_id: Optional[str] = None
    is_optional: bool = False


class WorkflowStep(BaseModel):
    """One approver's decision point within a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    step_order: int = Field(ge=1)
    step_name: str
    description: Optional[str] = None
    approver_id: Optional[str] = None
    is_optional: bool = False
    status: StepStatus = StepStatus.PENDING
    comments: Optional[str] = None
    approver_notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class ApprovalWorkflow(BaseModel):
    """An approval request routed through an ordered chain of steps."""

    id: str = Field(default_factory=new_id)
    request_type: RequestType
    request_id: str
    requester_id: str
    title: str
    description: Optional[str] = None
    justification: Optional[str] = None
    estimated_value: Optional[float] = None
    priority: Priority = Priority.MEDIUM
    request_data: Dict[str, Any] = Field(default_factory=dict)
    total_steps: int = Field(ge=1)
    current_step: int = Field(default=1, ge=1)
    status: WorkflowStatus = WorkflowStatus.PENDING
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1
    steps: List[WorkflowStep] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def active_step(self) -> Optional[WorkflowStep]:
        """Return the step awaiting a decision, if any."""
        if self.is_terminal:
            return None
        return next((s for s in self.steps if s.step_order == self.current_step), None)


# ---------------------------------------------------------------------------
# Bulk bookings


class AppointmentRequest(BaseModel):
    """One desired appointment as submitted in a batch."""

    doctor_id: str
    hospital_id: str
    appointment_date: date
    appointment_time: str
    consultation_fee: float = Field(default=0.0, ge=0)
    notes: Optional[str] = None
    patient_name: Optional[str] = None
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None

    @field_validator("doctor_id", "hospital_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty identifier")
        return v.strip()

    @field_validator("appointment_time", mode="before")
    @classmethod
    def _check_time(cls, v: Any) -> str:
        value = str(v).strip()
        if not _TIME_RE.match(value):
            raise ValueError("appointment time must be in HH:MM format")
        return value


class BulkBookingItem(BaseModel):
    """One appointment request within a batch and its outcome."""

    id: str = Field(default_factory=new_id)
    bulk_booking_id: str
    sequence_number: int = Field(ge=1)
    patient_name: str
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    doctor_id: str
    hospital_id: str
    appointment_date: date
    appointment_time: str
    consultation_fee: float = 0.0
    notes: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    appointment_id: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None


class BulkBooking(BaseModel):
    """A submitted group of appointment requests processed as independent units."""

    id: str = Field(default_factory=new_id)
    batch_number: str
    batch_name: str
    description: Optional[str] = None
    agent_id: str
    customer_id: str
    total_items: int = Field(ge=1)
    successful_items: int = 0
    failed_items: int = 0
    status: BatchStatus = BatchStatus.PROCESSING
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    claimed_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1
    items: List[BulkBookingItem] = Field(default_factory=list)

    def item(self, item_id: str) -> Optional[BulkBookingItem]:
        return next((i for i in self.items if i.id == item_id), None)

    def pending_items(self) -> List[BulkBookingItem]:
        return [i for i in self.items if i.status == ItemStatus.PENDING]

    def failed_item_list(self) -> List[BulkBookingItem]:
        return [i for i in self.items if i.status == ItemStatus.FAILED]

    def recount(self) -> None:
        """Recompute the success and failure counters from the item set."""
        self.successful_items = sum(1 for i in self.items if i.status == ItemStatus.SUCCESS)
        self.failed_items = sum(1 for i in self.items if i.status == ItemStatus.FAILED)


class Page(BaseModel):
    """Pagination envelope for list queries."""

    items: List[Any] = Field(default_factory=list)
    current_page: int = 1
    total_pages: int = 0
    total_items: int = 0
    items_per_page: int = 10
