"""In-memory implementation of the persistence gateway."""

from __future__ import annotations

from typing import Dict, Optional

from ..exceptions import BatchNotFound, ConcurrentModification, ItemNotFound, WorkflowNotFound
from ..models import (
    ApprovalWorkflow,
    BatchStatus,
    BulkBooking,
    BulkBookingItem,
    Priority,
    RequestType,
    WorkflowStatus,
    utcnow,
)


def _page(rows: list, offset: int, limit: Optional[int]) -> list:
    end = None if limit is None else offset + limit
    return rows[offset:end]


class InMemoryRepository:
    """Store workflows and batches in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in
    and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, ApprovalWorkflow] = {}
        self._batches: Dict[str, BulkBooking] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: ApprovalWorkflow) -> None:
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow {workflow.id} already exists")
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> ApprovalWorkflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def update_workflow(
        self, workflow: ApprovalWorkflow, expected_version: int
    ) -> ApprovalWorkflow:
        stored = self._workflows.get(workflow.id)
        if stored is None:
            raise WorkflowNotFound(workflow.id)
        if stored.version != expected_version:
            raise ConcurrentModification(
                f"Workflow {workflow.id} changed (version {stored.version}, expected {expected_version})"
            )
        updated = workflow.model_copy(deep=True)
        updated.version = expected_version + 1
        updated.updated_at = utcnow()
        self._workflows[workflow.id] = updated
        return updated.model_copy(deep=True)

    async def list_workflows(
        self,
        requester_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        request_type: Optional[RequestType] = None,
        priority: Optional[Priority] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[ApprovalWorkflow], int]:
        rows = [
            wf
            for wf in self._workflows.values()
            if (requester_id is None or wf.requester_id == requester_id)
            and (status is None or wf.status == status)
            and (request_type is None or wf.request_type == request_type)
            and (priority is None or wf.priority == priority)
        ]
        rows.sort(key=lambda wf: wf.created_at, reverse=True)
        return [wf.model_copy(deep=True) for wf in _page(rows, offset, limit)], len(rows)

    async def list_pending_approvals(self, approver_id: str) -> list[ApprovalWorkflow]:
        pending = []
        for wf in self._workflows.values():
            step = wf.active_step()
            if step is not None and step.approver_id == approver_id and step.status.is_open:
                pending.append(wf.model_copy(deep=True))
        pending.sort(key=lambda wf: wf.created_at)
        return pending

    # ------------------------------------------------------------------
    # Bulk bookings
    async def create_batch(self, batch: BulkBooking) -> None:
        if any(b.batch_number == batch.batch_number for b in self._batches.values()):
            raise ValueError(f"Batch number {batch.batch_number} already in use")
        self._batches[batch.id] = batch.model_copy(deep=True)

    async def get_batch(self, batch_id: str) -> BulkBooking | None:
        batch = self._batches.get(batch_id)
        return batch.model_copy(deep=True) if batch else None

    async def update_batch(
        self,
        batch: BulkBooking,
        expected_version: int,
        items: Optional[list[BulkBookingItem]] = None,
    ) -> BulkBooking:
        stored = self._batches.get(batch.id)
        if stored is None:
            raise BatchNotFound(batch.id)
        if stored.version != expected_version:
            raise ConcurrentModification(
                f"Bulk booking {batch.id} changed (version {stored.version}, expected {expected_version})"
            )
        updated = batch.model_copy(deep=True)
        # header writes never clobber item outcomes recorded in between
        updated.items = [i.model_copy(deep=True) for i in stored.items]
        for item in items or []:
            self._replace_item(updated, item)
        updated.version = expected_version + 1
        updated.updated_at = utcnow()
        self._batches[batch.id] = updated
        return updated.model_copy(deep=True)

    async def update_item(self, item: BulkBookingItem) -> None:
        stored = self._batches.get(item.bulk_booking_id)
        if stored is None:
            raise BatchNotFound(item.bulk_booking_id)
        self._replace_item(stored, item)

    @staticmethod
    def _replace_item(batch: BulkBooking, item: BulkBookingItem) -> None:
        for idx, existing in enumerate(batch.items):
            if existing.id == item.id:
                batch.items[idx] = item.model_copy(deep=True)
                return
        raise ItemNotFound(item.id)

    async def list_batches(
        self,
        agent_id: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[BulkBooking], int]:
        rows = [
            b
            for b in self._batches.values()
            if (agent_id is None or b.agent_id == agent_id)
            and (status is None or b.status == status)
        ]
        rows.sort(key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in _page(rows, offset, limit)], len(rows)

    async def close(self) -> None:
        pass
