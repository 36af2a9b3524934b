"""Repository abstraction for workflow and bulk booking persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..models import (
    ApprovalWorkflow,
    BatchStatus,
    BulkBooking,
    BulkBookingItem,
    Priority,
    RequestType,
    WorkflowStatus,
)


class WorkflowRepository(Protocol):
    """Protocol for approval workflow persistence backends."""

    async def create_workflow(self, workflow: ApprovalWorkflow) -> None:
        """Persist a new workflow together with all of its steps."""

    async def get_workflow(self, workflow_id: str) -> ApprovalWorkflow | None:
        """Retrieve a workflow and its steps ordered by ``step_order``."""

    async def update_workflow(
        self, workflow: ApprovalWorkflow, expected_version: int
    ) -> ApprovalWorkflow:
        """Atomically write the workflow header and its steps.

        Raises ``ConcurrentModification`` when the stored version no longer
        equals ``expected_version``; nothing is written in that case.
        """

    async def list_workflows(
        self,
        requester_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        request_type: Optional[RequestType] = None,
        priority: Optional[Priority] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[ApprovalWorkflow], int]:
        """Return one page of matching workflows (newest first) and the total count."""

    async def list_pending_approvals(self, approver_id: str) -> list[ApprovalWorkflow]:
        """Return open workflows whose active step is assigned to ``approver_id``."""


class BatchRepository(Protocol):
    """Protocol for bulk booking persistence backends."""

    async def create_batch(self, batch: BulkBooking) -> None:
        """Persist a new batch together with all of its items."""

    async def get_batch(self, batch_id: str) -> BulkBooking | None:
        """Retrieve a batch and its items ordered by ``sequence_number``."""

    async def update_batch(
        self,
        batch: BulkBooking,
        expected_version: int,
        items: Optional[list[BulkBookingItem]] = None,
    ) -> BulkBooking:
        """Atomically write the batch header and the given items."""

    async def update_item(self, item: BulkBookingItem) -> None:
        """Persist a single item outcome."""

    async def list_batches(
        self,
        agent_id: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[BulkBooking], int]:
        """Return one page of matching batches (newest first) and the total count."""


class Repository(WorkflowRepository, BatchRepository, Protocol):
    """Full persistence gateway used by both engines."""

    async def close(self) -> None:
        """Release connections held by the backend."""
