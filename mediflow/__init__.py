"""Mediflow: approval workflows and bulk appointment booking for agents."""

from .batches import BulkBookingProcessor
from .booking import (
    AppointmentMaterializer,
    HttpAppointmentMaterializer,
    LocalAppointmentMaterializer,
    get_materializer,
)
from .config import load_config
from .models import ApprovalWorkflow, BulkBooking, StepDefinition
from .persistence import get_repository
from .security.context import CallerIdentity
from .security.policy import DirectoryIdentityContext
from .workflows import ApprovalWorkflowEngine

__version__ = "0.1.0"
__all__ = [
    "ApprovalWorkflowEngine",
    "BulkBookingProcessor",
    "ApprovalWorkflow",
    "BulkBooking",
    "StepDefinition",
    "CallerIdentity",
    "DirectoryIdentityContext",
    "AppointmentMaterializer",
    "LocalAppointmentMaterializer",
    "HttpAppointmentMaterializer",
    "get_materializer",
    "get_repository",
    "load_config",
]
