"""Caller identity carried into every engine operation."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet

from pydantic import BaseModel, ConfigDict, Field


class CallerIdentity(BaseModel):
    """Authenticated caller as supplied by the identity context.

    The engines never authenticate; they only authorize against
    ``agent_id`` (ownership / assignment) and ``permissions``.
    """

    model_config = ConfigDict(frozen=True)

    agent_id: str
    permissions: FrozenSet[str] = Field(default_factory=frozenset)
    claims: Dict[str, Any] = Field(default_factory=dict, description="Token claims")

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions
