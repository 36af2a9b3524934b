import asyncio

import pytest

from mediflow.batches import BulkBookingProcessor
from mediflow.booking import AppointmentMaterializer
from mediflow.config import BatchConfig, CustomerRecord
from mediflow.exceptions import DownstreamFailure
from mediflow.persistence import InMemoryRepository
from mediflow.security.policy import DirectoryIdentityContext
from mediflow.workflows import ApprovalWorkflowEngine


class ScriptedMaterializer(AppointmentMaterializer):
    """Booking service double that refuses listed doctors."""

    def __init__(self):
        self.failing = set()
        self.delay = 0.0
        self.requests = []
        self.active = 0
        self.peak = 0

    async def create_appointment(self, request):
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if request.doctor_id in self.failing:
                raise DownstreamFailure(f"Doctor {request.doctor_id} is unavailable")
            return f"apt-{request.appointment_number}"
        finally:
            self.active -= 1


@pytest.fixture
def identity():
    ctx = DirectoryIdentityContext(agents=["agent-1", "agent-2", "agent-3", "supervisor"])
    ctx.add_customer(
        "cust-1",
        CustomerRecord(
            agent_id="agent-1",
            first_name="Jane",
            last_name="Doe",
            email="jane@example.com",
            phone="555-0100",
        ),
    )
    ctx.add_customer("cust-2", CustomerRecord(agent_id="agent-2", first_name="Raj", last_name="Patel"))
    return ctx


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def engine(repo, identity):
    return ApprovalWorkflowEngine(repo, identity)


@pytest.fixture
def materializer():
    return ScriptedMaterializer()


@pytest.fixture
def batch_config():
    return BatchConfig()


@pytest.fixture
def processor(repo, identity, materializer, batch_config):
    return BulkBookingProcessor(repo, identity, materializer, config=batch_config)
