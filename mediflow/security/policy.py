"""Identity context: caller resolution and ownership checks."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Protocol

from ..config import CustomerRecord, IdentityConfig
from ..exceptions import UnauthorizedError
from .context import CallerIdentity
from .tokens import TokenVerifier

logger = logging.getLogger(__name__)


class IdentityContext(Protocol):
    """Boundary to the authentication layer consumed by both engines."""

    override_permission: str

    def resolve_caller(self, token: str) -> CallerIdentity:
        """Return the caller behind ``token``."""

    def owns_resource(self, agent_id: str, resource_id: str) -> bool:
        """Return ``True`` if ``agent_id`` owns ``resource_id``."""

    def agent_exists(self, agent_id: str) -> bool:
        """Return ``True`` if ``agent_id`` refers to a known agent."""

    def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        """Return contact details of a customer, if known."""


class DirectoryIdentityContext:
    """Identity context backed by a static agent and customer directory."""

    def __init__(
        self,
        agents: Iterable[str] = (),
        customers: Optional[Dict[str, CustomerRecord]] = None,
        verifier: Optional[TokenVerifier] = None,
        override_permission: str = "approvals:override",
    ) -> None:
        self._agents = set(agents)
        self._customers: Dict[str, CustomerRecord] = dict(customers or {})
        self._verifier = verifier
        self.override_permission = override_permission

    @classmethod
    def from_config(cls, config: IdentityConfig) -> "DirectoryIdentityContext":
        return cls(
            agents=config.agents,
            customers=config.customers,
            verifier=TokenVerifier(config),
            override_permission=config.override_permission,
        )

    def add_agent(self, agent_id: str) -> None:
        self._agents.add(agent_id)

    def add_customer(self, customer_id: str, record: CustomerRecord) -> None:
        self._customers[customer_id] = record
        self._agents.add(record.agent_id)

    def resolve_caller(self, token: str) -> CallerIdentity:
        if self._verifier is None:
            raise RuntimeError("No token verifier configured")
        claims = self._verifier.verify(token)
        raw = claims.get("permissions") or claims.get("scope") or []
        if isinstance(raw, str):
            raw = raw.split()
        agent_id = claims.get("agentId") or claims.get("sub")
        if not agent_id:
            raise UnauthorizedError("Token does not identify an agent")
        caller = CallerIdentity(
            agent_id=str(agent_id),
            permissions=frozenset(raw),
            claims=dict(claims),
        )
        logger.debug(f"Resolved caller {caller.agent_id}")
        return caller

    def owns_resource(self, agent_id: str, resource_id: str) -> bool:
        customer = self._customers.get(resource_id)
        return customer is not None and customer.agent_id == agent_id

    def agent_exists(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        return self._customers.get(customer_id)
