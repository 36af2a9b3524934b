from .database import Database, normalize_url
from .models import BatchRow, ItemRow, StepRow, WorkflowRow

__all__ = [
    "Database",
    "normalize_url",
    "WorkflowRow",
    "StepRow",
    "BatchRow",
    "ItemRow",
]
