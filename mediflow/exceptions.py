"""Error taxonomy shared by the workflow engine and the batch processor."""

from __future__ import annotations


class MediflowError(Exception):
    """Base class for every error raised by mediflow."""


# ---------------------------------------------------------------------------
# Malformed input, rejected before any state mutation


class ValidationError(MediflowError):
    """Caller input is malformed and can be corrected and resubmitted."""


class InvalidWorkflowRequest(ValidationError):
    pass


class InvalidBatchRequest(ValidationError):
    pass


# ---------------------------------------------------------------------------
# Unknown references


class NotFoundError(MediflowError):
    """Referenced entity does not exist or is not visible to the caller."""

    entity = "Entity"

    def __init__(self, entity_id: str, message: str | None = None) -> None:
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity} {entity_id} not found")


class WorkflowNotFound(NotFoundError):
    entity = "Workflow"


class StepNotFound(NotFoundError):
    entity = "Step"


class BatchNotFound(NotFoundError):
    entity = "Bulk booking"


class ItemNotFound(NotFoundError):
    entity = "Bulk booking item"


class CustomerNotFound(NotFoundError):
    entity = "Customer"


# ---------------------------------------------------------------------------
# Authorization


class UnauthorizedError(MediflowError):
    """Caller is not the assigned approver or owner of the entity."""


# ---------------------------------------------------------------------------
# State machine guards


class InvalidTransitionError(MediflowError):
    """Requested transition is not allowed from the entity's current state."""


class StepNotActive(InvalidTransitionError):
    pass


class WorkflowAlreadyTerminal(InvalidTransitionError):
    pass


class BatchAlreadyTerminal(InvalidTransitionError):
    pass


class NothingToRetry(InvalidTransitionError):
    pass


class ConcurrentModification(InvalidTransitionError):
    """Entity changed between read and write; the write was discarded."""


# ---------------------------------------------------------------------------
# Per-item outcomes


class DownstreamFailure(MediflowError):
    """Appointment materialization failed for a single batch item.

    Recorded on the item as business data; never surfaced as a request error.
    """


class AppointmentTimeout(DownstreamFailure):
    pass


__all__ = [
    "MediflowError",
    "ValidationError",
    "InvalidWorkflowRequest",
    "InvalidBatchRequest",
    "NotFoundError",
    "WorkflowNotFound",
    "StepNotFound",
    "BatchNotFound",
    "ItemNotFound",
    "CustomerNotFound",
    "UnauthorizedError",
    "InvalidTransitionError",
    "StepNotActive",
    "WorkflowAlreadyTerminal",
    "BatchAlreadyTerminal",
    "NothingToRetry",
    "ConcurrentModification",
    "DownstreamFailure",
    "AppointmentTimeout",
]
