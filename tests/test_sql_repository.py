from datetime import date

import pytest
import pytest_asyncio

from mediflow.batches import BulkBookingProcessor
from mediflow.config import BatchConfig
from mediflow.exceptions import BatchNotFound, ConcurrentModification
from mediflow.models import (
    ApprovalWorkflow,
    BatchStatus,
    BulkBooking,
    BulkBookingItem,
    ItemStatus,
    RequestType,
    StepStatus,
    WorkflowStatus,
    WorkflowStep,
)
from mediflow.persistence import SQLRepository
from mediflow.security.context import CallerIdentity
from mediflow.workflows import ApprovalWorkflowEngine


def _workflow(requester="agent-1"):
    wf = ApprovalWorkflow(
        request_type=RequestType.APPOINTMENT_CANCELLATION,
        request_id="apt-1",
        requester_id=requester,
        title="Cancel apt-1",
        total_steps=2,
        request_data={"reason": "sick"},
    )
    wf.steps = [
        WorkflowStep(workflow_id=wf.id, step_order=2, step_name="Finance", approver_id="agent-3"),
        WorkflowStep(workflow_id=wf.id, step_order=1, step_name="Manager", approver_id="agent-2"),
    ]
    return wf


def _batch(number="BULK-20261102-000000000001"):
    batch = BulkBooking(
        batch_number=number,
        batch_name="Checkups",
        agent_id="agent-1",
        customer_id="cust-1",
        total_items=2,
    )
    batch.items = [
        BulkBookingItem(
            bulk_booking_id=batch.id,
            sequence_number=seq,
            patient_name="Jane Doe",
            doctor_id="doc-1",
            hospital_id="hosp-1",
            appointment_date=date(2026, 11, 2),
            appointment_time=f"0{8 + seq}:00",
            consultation_fee=100.0,
        )
        for seq in (1, 2)
    ]
    return batch


@pytest_asyncio.fixture
async def sql_repo(tmp_path):
    repo = SQLRepository(f"sqlite://{tmp_path / 'mediflow.db'}")
    yield repo
    await repo.close()


@pytest.mark.asyncio
async def test_workflow_round_trip(sql_repo):
    wf = _workflow()
    await sql_repo.create_workflow(wf)

    stored = await sql_repo.get_workflow(wf.id)
    assert stored is not None
    assert stored.request_data == {"reason": "sick"}
    assert [s.step_name for s in stored.steps] == ["Manager", "Finance"]
    assert stored.created_at.tzinfo is not None
    assert stored.version == 1

    assert await sql_repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_workflow_update_checks_version(sql_repo):
    wf = _workflow()
    await sql_repo.create_workflow(wf)
    first = await sql_repo.get_workflow(wf.id)
    second = await sql_repo.get_workflow(wf.id)

    first.status = WorkflowStatus.IN_PROGRESS
    first.current_step = 2
    first.steps[0].status = StepStatus.APPROVED
    updated = await sql_repo.update_workflow(first, expected_version=1)
    assert updated.version == 2

    second.status = WorkflowStatus.CANCELLED
    with pytest.raises(ConcurrentModification):
        await sql_repo.update_workflow(second, expected_version=1)

    stored = await sql_repo.get_workflow(wf.id)
    assert stored.status == WorkflowStatus.IN_PROGRESS
    assert stored.steps[0].status == StepStatus.APPROVED
    assert stored.version == 2


@pytest.mark.asyncio
async def test_pending_approvals_and_listing(sql_repo):
    wf = _workflow()
    await sql_repo.create_workflow(wf)
    await sql_repo.create_workflow(_workflow(requester="agent-2"))

    pending = await sql_repo.list_pending_approvals("agent-2")
    assert len(pending) == 2
    assert await sql_repo.list_pending_approvals("agent-3") == []

    rows, total = await sql_repo.list_workflows(requester_id="agent-1")
    assert total == 1
    assert rows[0].id == wf.id

    rows, total = await sql_repo.list_workflows(limit=1)
    assert total == 2
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_batch_header_update_keeps_item_outcomes(sql_repo):
    batch = _batch()
    await sql_repo.create_batch(batch)
    header = await sql_repo.get_batch(batch.id)

    item = header.items[0]
    item.status = ItemStatus.SUCCESS
    item.appointment_id = "apt-1"
    await sql_repo.update_item(item)

    header.notes = "header only"
    updated = await sql_repo.update_batch(header, expected_version=1)
    assert updated.version == 2
    assert updated.notes == "header only"
    assert updated.items[0].status == ItemStatus.SUCCESS
    assert updated.items[0].appointment_id == "apt-1"
    assert updated.items[0].appointment_date == date(2026, 11, 2)

    with pytest.raises(ConcurrentModification):
        await sql_repo.update_batch(header, expected_version=1)

    rows, total = await sql_repo.list_batches(agent_id="agent-1", status=BatchStatus.PROCESSING)
    assert total == 1
    assert rows[0].id == batch.id


@pytest.mark.asyncio
async def test_engines_on_sqlite(sql_repo, identity, materializer):
    caller = CallerIdentity(agent_id="agent-1")
    materializer.failing = {"doc-busy"}
    processor = BulkBookingProcessor(
        sql_repo, identity, materializer, config=BatchConfig(max_workers=1)
    )
    rows = [
        {
            "doctor_id": doctor,
            "hospital_id": "hosp-1",
            "appointment_date": "2026-11-02",
            "appointment_time": f"{9 + i:02d}:30",
        }
        for i, doctor in enumerate(["doc-1", "doc-busy", "doc-1", "doc-busy", "doc-1"])
    ]
    batch = await processor.submit(caller, "cust-1", "SQL batch", rows)
    assert batch.status == BatchStatus.PARTIALLY_COMPLETED
    assert (batch.successful_items, batch.failed_items) == (3, 2)

    materializer.failing = set()
    batch = await processor.retry(batch.id, caller)
    assert batch.status == BatchStatus.COMPLETED

    engine = ApprovalWorkflowEngine(sql_repo, identity)
    wf = await engine.create(
        caller,
        "BULK_BOOKING_APPROVAL",
        batch.id,
        [{"step_name": "Manager", "approver_id": "agent-2"}],
    )
    wf = await engine.decide_step(wf.id, wf.steps[0].id, CallerIdentity(agent_id="agent-2"), "APPROVED")
    assert wf.status == WorkflowStatus.APPROVED
    assert (await sql_repo.get_workflow(wf.id)).status == WorkflowStatus.APPROVED


@pytest.mark.asyncio
async def test_update_batch_reports_missing_batch(sql_repo):
    with pytest.raises(BatchNotFound):
        await sql_repo.update_batch(_batch(), expected_version=1)

    batch = _batch()
    await sql_repo.create_batch(batch)

    async def vanished(batch_id):
        return None

    sql_repo.get_batch = vanished
    with pytest.raises(BatchNotFound):
        await sql_repo.update_batch(batch, expected_version=1)


@pytest.mark.asyncio
async def test_processing_claim_is_persisted(sql_repo, identity, materializer):
    caller = CallerIdentity(agent_id="agent-1")
    processor = BulkBookingProcessor(sql_repo, identity, materializer)
    rows = [
        {
            "doctor_id": "doc-1",
            "hospital_id": "hosp-1",
            "appointment_date": "2026-11-02",
            "appointment_time": "09:30",
        }
    ]
    batch = await processor.submit(caller, "cust-1", "Claim", rows, process=False)

    claimed = await processor._claim(batch)
    stored = await sql_repo.get_batch(batch.id)
    assert stored.version == claimed.version == 2
    assert stored.claimed_until is not None
    assert stored.claimed_until.tzinfo is not None

    with pytest.raises(ConcurrentModification):
        await BulkBookingProcessor(sql_repo, identity, materializer).process_batch(batch.id)
