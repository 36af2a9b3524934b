"""Relational implementation of the persistence gateway on SQLModel."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import BatchRow, Database, ItemRow, StepRow, WorkflowRow
from ..exceptions import BatchNotFound, ConcurrentModification, WorkflowNotFound
from ..models import (
    ApprovalWorkflow,
    BatchStatus,
    BulkBooking,
    BulkBookingItem,
    Priority,
    RequestType,
    StepStatus,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)

_OPEN_WORKFLOW = [WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS]
_OPEN_STEP = [StepStatus.PENDING, StepStatus.IN_PROGRESS]


def _aware(data: dict[str, Any]) -> dict[str, Any]:
    # SQLite hands back naive timestamps; everything is stored in UTC
    for key, value in data.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            data[key] = value.replace(tzinfo=timezone.utc)
    return data


def _to_workflow(row: WorkflowRow, steps: Iterable[StepRow]) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        **_aware(row.model_dump()),
        steps=[WorkflowStep(**_aware(s.model_dump())) for s in steps],
    )


def _to_batch(row: BatchRow, items: Iterable[ItemRow]) -> BulkBooking:
    return BulkBooking(
        **_aware(row.model_dump()),
        items=[BulkBookingItem(**_aware(i.model_dump())) for i in items],
    )


class SQLRepository:
    """Persist workflows and batches in SQLite or PostgreSQL.

    Multi-record writes run inside one transaction; the header row is
    locked (``SELECT ... FOR UPDATE`` where supported) and its ``version``
    compared before anything is written.
    """

    def __init__(self, database_url: str) -> None:
        self.db = Database(database_url)

    async def _steps_for(
        self, session: AsyncSession, workflow_ids: list[str]
    ) -> dict[str, list[StepRow]]:
        grouped: dict[str, list[StepRow]] = defaultdict(list)
        if not workflow_ids:
            return grouped
        result = await session.execute(
            select(StepRow)
            .where(StepRow.workflow_id.in_(workflow_ids))
            .order_by(StepRow.workflow_id, StepRow.step_order)
        )
        for step in result.scalars().all():
            grouped[step.workflow_id].append(step)
        return grouped

    async def _items_for(
        self, session: AsyncSession, batch_ids: list[str]
    ) -> dict[str, list[ItemRow]]:
        grouped: dict[str, list[ItemRow]] = defaultdict(list)
        if not batch_ids:
            return grouped
        result = await session.execute(
            select(ItemRow)
            .where(ItemRow.bulk_booking_id.in_(batch_ids))
            .order_by(ItemRow.bulk_booking_id, ItemRow.sequence_number)
        )
        for item in result.scalars().all():
            grouped[item.bulk_booking_id].append(item)
        return grouped

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: ApprovalWorkflow) -> None:
        async with self.db.session() as session:
            async with session.begin():
                session.add(WorkflowRow(**workflow.model_dump(exclude={"steps"})))
                # flush the header first so step foreign keys resolve
                await session.flush()
                session.add_all(StepRow(**s.model_dump()) for s in workflow.steps)

    async def get_workflow(self, workflow_id: str) -> ApprovalWorkflow | None:
        async with self.db.session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            if row is None:
                return None
            steps = await self._steps_for(session, [workflow_id])
        return _to_workflow(row, steps[workflow_id])

    async def update_workflow(
        self, workflow: ApprovalWorkflow, expected_version: int
    ) -> ApprovalWorkflow:
        updated = workflow.model_copy(deep=True)
        updated.version = expected_version + 1
        updated.updated_at = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(WorkflowRow, workflow.id, with_for_update=True)
                if row is None:
                    raise WorkflowNotFound(workflow.id)
                if row.version != expected_version:
                    raise ConcurrentModification(
                        f"Workflow {workflow.id} changed (version {row.version}, expected {expected_version})"
                    )
                for key, value in updated.model_dump(exclude={"steps"}).items():
                    setattr(row, key, value)
                for step in updated.steps:
                    await session.merge(StepRow(**step.model_dump()))
        return updated

    async def list_workflows(
        self,
        requester_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        request_type: Optional[RequestType] = None,
        priority: Optional[Priority] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[ApprovalWorkflow], int]:
        conditions = []
        if requester_id is not None:
            conditions.append(WorkflowRow.requester_id == requester_id)
        if status is not None:
            conditions.append(WorkflowRow.status == status)
        if request_type is not None:
            conditions.append(WorkflowRow.request_type == request_type)
        if priority is not None:
            conditions.append(WorkflowRow.priority == priority)

        stmt = (
            select(WorkflowRow)
            .where(*conditions)
            .order_by(WorkflowRow.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(WorkflowRow).where(*conditions)
            )
            rows = (await session.execute(stmt)).scalars().all()
            steps = await self._steps_for(session, [r.id for r in rows])
        return [_to_workflow(r, steps[r.id]) for r in rows], int(total or 0)

    async def list_pending_approvals(self, approver_id: str) -> list[ApprovalWorkflow]:
        stmt = (
            select(WorkflowRow)
            .join(
                StepRow,
                and_(
                    StepRow.workflow_id == WorkflowRow.id,
                    StepRow.step_order == WorkflowRow.current_step,
                ),
            )
            .where(
                StepRow.approver_id == approver_id,
                StepRow.status.in_(_OPEN_STEP),
                WorkflowRow.status.in_(_OPEN_WORKFLOW),
            )
            .order_by(WorkflowRow.created_at)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            steps = await self._steps_for(session, [r.id for r in rows])
        return [_to_workflow(r, steps[r.id]) for r in rows]

    # ------------------------------------------------------------------
    # Bulk bookings
    async def create_batch(self, batch: BulkBooking) -> None:
        async with self.db.session() as session:
            async with session.begin():
                session.add(BatchRow(**batch.model_dump(exclude={"items"})))
                await session.flush()
                session.add_all(ItemRow(**i.model_dump()) for i in batch.items)

    async def get_batch(self, batch_id: str) -> BulkBooking | None:
        async with self.db.session() as session:
            row = await session.get(BatchRow, batch_id)
            if row is None:
                return None
            items = await self._items_for(session, [batch_id])
        return _to_batch(row, items[batch_id])

    async def update_batch(
        self,
        batch: BulkBooking,
        expected_version: int,
        items: Optional[list[BulkBookingItem]] = None,
    ) -> BulkBooking:
        header = batch.model_dump(exclude={"items"})
        header["version"] = expected_version + 1
        header["updated_at"] = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(BatchRow, batch.id, with_for_update=True)
                if row is None:
                    raise BatchNotFound(batch.id)
                if row.version != expected_version:
                    raise ConcurrentModification(
                        f"Bulk booking {batch.id} changed (version {row.version}, expected {expected_version})"
                    )
                for key, value in header.items():
                    setattr(row, key, value)
                for item in items or []:
                    await session.merge(ItemRow(**item.model_dump()))
        updated = await self.get_batch(batch.id)
        if updated is None:
            raise BatchNotFound(batch.id)
        return updated

    async def update_item(self, item: BulkBookingItem) -> None:
        async with self.db.session() as session:
            async with session.begin():
                await session.merge(ItemRow(**item.model_dump()))

    async def list_batches(
        self,
        agent_id: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[BulkBooking], int]:
        conditions = []
        if agent_id is not None:
            conditions.append(BatchRow.agent_id == agent_id)
        if status is not None:
            conditions.append(BatchRow.status == status)

        stmt = (
            select(BatchRow)
            .where(*conditions)
            .order_by(BatchRow.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(BatchRow).where(*conditions)
            )
            rows = (await session.execute(stmt)).scalars().all()
            items = await self._items_for(session, [r.id for r in rows])
        return [_to_batch(r, items[r.id]) for r in rows], int(total or 0)

    async def close(self) -> None:
        await self.db.dispose()
