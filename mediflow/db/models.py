from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..models import BatchStatus, ItemStatus, Priority, RequestType, StepStatus, WorkflowStatus


def _timestamp(nullable: bool = True):
    return Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=nullable),
    )


class WorkflowRow(SQLModel, table=True):
    """Approval workflow header."""

    __tablename__ = "approval_workflows"

    id: str = Field(primary_key=True)
    request_type: RequestType
    request_id: str
    requester_id: str = Field(index=True)
    title: str
    description: Optional[str] = None
    justification: Optional[str] = None
    estimated_value: Optional[float] = None
    priority: Priority = Priority.MEDIUM
    request_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    total_steps: int
    current_step: int = 1
    status: WorkflowStatus = Field(default=WorkflowStatus.PENDING, index=True)
    due_date: Optional[datetime] = _timestamp()
    completed_at: Optional[datetime] = _timestamp()
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = _timestamp(nullable=False)
    updated_at: Optional[datetime] = _timestamp(nullable=False)
    version: int = 1


class StepRow(SQLModel, table=True):
    """One ordered approval step."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("workflow_id", "step_order"),)

    id: str = Field(primary_key=True)
    workflow_id: str = Field(foreign_key="approval_workflows.id", index=True)
    step_order: int
    step_name: str
    description: Optional[str] = None
    approver_id: Optional[str] = Field(default=None, index=True)
    is_optional: bool = False
    status: StepStatus = StepStatus.PENDING
    comments: Optional[str] = None
    approver_notes: Optional[str] = None
    processed_at: Optional[datetime] = _timestamp()
    processed_by: Optional[str] = None


class BatchRow(SQLModel, table=True):
    """Bulk booking header."""

    __tablename__ = "bulk_bookings"

    id: str = Field(primary_key=True)
    batch_number: str = Field(unique=True)
    batch_name: str
    description: Optional[str] = None
    agent_id: str = Field(index=True)
    customer_id: str
    total_items: int
    successful_items: int = 0
    failed_items: int = 0
    status: BatchStatus = Field(default=BatchStatus.PROCESSING, index=True)
    notes: Optional[str] = None
    completed_at: Optional[datetime] = _timestamp()
    claimed_until: Optional[datetime] = _timestamp()
    created_at: Optional[datetime] = _timestamp(nullable=False)
    updated_at: Optional[datetime] = _timestamp(nullable=False)
    version: int = 1


class ItemRow(SQLModel, table=True):
    """One appointment request inside a bulk booking."""

    __tablename__ = "bulk_booking_items"
    __table_args__ = (UniqueConstraint("bulk_booking_id", "sequence_number"),)

    id: str = Field(primary_key=True)
    bulk_booking_id: str = Field(foreign_key="bulk_bookings.id", index=True)
    sequence_number: int
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
    processed_at: Optional[datetime] = _timestamp()
