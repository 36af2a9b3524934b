"""Persistence layer for mediflow workflows and bulk bookings."""

from __future__ import annotations

import os
from typing import Optional

from ..config import MediflowConfig, load_config
from .inmemory import InMemoryRepository
from .repository import BatchRepository, Repository, WorkflowRepository
from .sql import SQLRepository

_SQL_PREFIXES = (
    "sqlite://",
    "sqlite+aiosqlite://",
    "postgres://",
    "postgresql://",
    "postgresql+asyncpg://",
)

_repository_instance: Repository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[MediflowConfig] = None
) -> Repository:
    """Factory function to obtain the persistence gateway.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``MEDIFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("MEDIFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
    elif database_url.startswith(_SQL_PREFIXES):
        _repository_instance = SQLRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "BatchRepository",
    "Repository",
    "InMemoryRepository",
    "SQLRepository",
    "get_repository",
]
