"""Multi-step approval workflow engine."""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

import pydantic
from pydantic import BaseModel, Field

from .exceptions import (
    InvalidWorkflowRequest,
    StepNotActive,
    StepNotFound,
    UnauthorizedError,
    ValidationError,
    WorkflowAlreadyTerminal,
    WorkflowNotFound,
)
from .models import (
    ApprovalWorkflow,
    Page,
    Priority,
    RequestType,
    StepDefinition,
    StepStatus,
    Verdict,
    WorkflowStatus,
    WorkflowStep,
    coerce_enum,
    utcnow,
)
from .persistence.repository import WorkflowRepository
from .security.context import CallerIdentity
from .security.policy import IdentityContext
from .utils.locks import EntityLocks

logger = logging.getLogger(__name__)


class WorkflowStats(BaseModel):
    """Counts of a requester's workflows plus their own approval backlog."""

    by_status: Dict[str, int] = Field(default_factory=dict)
    by_request_type: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    pending_approvals: int = 0


class ApprovalWorkflowEngine:
    """Routes requests through an ordered chain of approvers.

    Steps are decided strictly in order. An approval advances ``current_step``
    (or finishes the workflow on the last step); a rejection of a required
    step ends the workflow immediately, while a rejection of an optional
    step is recorded as ``SKIPPED`` and the chain continues.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        identity: IdentityContext,
        locks: Optional[EntityLocks] = None,
    ) -> None:
        self._repository = repository
        self._identity = identity
        self._locks = locks or EntityLocks()

    # ------------------------------------------------------------------
    # Authorization helpers
    def _is_override(self, caller: CallerIdentity) -> bool:
        return caller.has_permission(self._identity.override_permission)

    def _can_view(self, caller: CallerIdentity, workflow: ApprovalWorkflow) -> bool:
        return (
            workflow.requester_id == caller.agent_id
            or any(s.approver_id == caller.agent_id for s in workflow.steps)
            or self._is_override(caller)
        )

    def _can_decide(self, caller: CallerIdentity, step: WorkflowStep) -> bool:
        if step.approver_id is not None and step.approver_id == caller.agent_id:
            return True
        return self._is_override(caller)

    async def _load(self, workflow_id: str) -> ApprovalWorkflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    # ------------------------------------------------------------------
    # Operations
    async def create(
        self,
        caller: CallerIdentity,
        request_type: Union[RequestType, str],
        request_id: str,
        steps: Iterable[Union[StepDefinition, Dict[str, Any]]],
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        justification: Optional[str] = None,
        estimated_value: Optional[float] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
        request_data: Optional[Dict[str, Any]] = None,
        due_date: Optional[datetime] = None,
    ) -> ApprovalWorkflow:
        """Create a workflow with one pending step per definition."""
        request_type = coerce_enum(RequestType, request_type, InvalidWorkflowRequest)
        priority = coerce_enum(Priority, priority, InvalidWorkflowRequest)
        if not request_id:
            raise InvalidWorkflowRequest("A request id is required")

        try:
            definitions = [StepDefinition.model_validate(s) for s in steps or []]
        except pydantic.ValidationError as exc:
            raise InvalidWorkflowRequest(f"Invalid step definition: {exc}") from exc
        if not definitions:
            raise InvalidWorkflowRequest("At least one approval step is required")

        for index, definition in enumerate(definitions, start=1):
            if definition.approver_id and not self._identity.agent_exists(definition.approver_id):
                raise InvalidWorkflowRequest(
                    f"Step {index} references unknown approver {definition.approver_id}"
                )

        workflow = ApprovalWorkflow(
            request_type=request_type,
            request_id=request_id,
            requester_id=caller.agent_id,
            title=title or description or f"{request_type.value} {request_id}",
            description=description,
            justification=justification,
            estimated_value=estimated_value,
            priority=priority,
            request_data=request_data
            if request_data is not None
            else {"requestType": request_type.value, "requestId": request_id},
            total_steps=len(definitions),
            due_date=due_date,
        )
        workflow.steps = [
            WorkflowStep(
                workflow_id=workflow.id,
                step_order=index,
                step_name=definition.step_name,
                description=definition.description,
                approver_id=definition.approver_id,
                is_optional=definition.is_optional,
            )
            for index, definition in enumerate(definitions, start=1)
        ]

        await self._repository.create_workflow(workflow)
        logger.info(
            f"Created workflow {workflow.id} ({request_type.value}) with {workflow.total_steps} steps"
        )
        return workflow

    async def get(self, workflow_id: str, caller: CallerIdentity) -> ApprovalWorkflow:
        workflow = await self._load(workflow_id)
        if not self._can_view(caller, workflow):
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list_workflows(
        self,
        caller: CallerIdentity,
        status: Optional[Union[WorkflowStatus, str]] = None,
        request_type: Optional[Union[RequestType, str]] = None,
        priority: Optional[Union[Priority, str]] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """Return the caller's own workflows, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        workflows, total = await self._repository.list_workflows(
            requester_id=caller.agent_id,
            status=coerce_enum(WorkflowStatus, status) if status else None,
            request_type=coerce_enum(RequestType, request_type) if request_type else None,
            priority=coerce_enum(Priority, priority) if priority else None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return Page(
            items=workflows,
            current_page=page,
            total_pages=math.ceil(total / limit),
            total_items=total,
            items_per_page=limit,
        )

    async def pending_approvals(self, caller: CallerIdentity) -> list[ApprovalWorkflow]:
        """Workflows whose active step waits on the caller."""
        return await self._repository.list_pending_approvals(caller.agent_id)

    async def decide_step(
        self,
        workflow_id: str,
        step_id: str,
        caller: CallerIdentity,
        verdict: Union[Verdict, str],
        comments: Optional[str] = None,
        approver_notes: Optional[str] = None,
    ) -> ApprovalWorkflow:
        """Record an approver's verdict on the active step."""
        verdict = coerce_enum(Verdict, verdict)

        async with self._locks.hold(workflow_id):
            workflow = await self._load(workflow_id)
            step = workflow.step(step_id)
            if step is None:
                raise StepNotFound(step_id)
            if not self._can_decide(caller, step):
                logger.debug(f"Agent {caller.agent_id} may not decide step {step_id}")
                raise UnauthorizedError(
                    f"Agent {caller.agent_id} is not the approver of step {step.step_order}"
                )
            if workflow.is_terminal:
                raise WorkflowAlreadyTerminal(
                    f"Workflow {workflow_id} is already {workflow.status.value}"
                )
            if step.step_order != workflow.current_step or not step.status.is_open:
                raise StepNotActive(
                    f"Step {step.step_order} is not currently active "
                    f"(active step is {workflow.current_step})"
                )

            expected_version = workflow.version
            now = utcnow()
            step.processed_at = now
            step.processed_by = caller.agent_id
            step.comments = comments
            step.approver_notes = approver_notes

            if verdict == Verdict.REJECTED and not step.is_optional:
                step.status = StepStatus.REJECTED
                workflow.status = WorkflowStatus.REJECTED
                workflow.completed_at = now
            else:
                step.status = (
                    StepStatus.APPROVED if verdict == Verdict.APPROVED else StepStatus.SKIPPED
                )
                if step.step_order == workflow.total_steps:
                    workflow.status = WorkflowStatus.APPROVED
                    workflow.completed_at = now
                else:
                    workflow.current_step = step.step_order + 1
                    workflow.status = WorkflowStatus.IN_PROGRESS

            workflow = await self._repository.update_workflow(workflow, expected_version)

        logger.info(
            f"Step {step.step_order}/{workflow.total_steps} of workflow {workflow_id} "
            f"{step.status.value} by {caller.agent_id}; workflow is {workflow.status.value}"
        )
        return workflow

    async def cancel(
        self, workflow_id: str, caller: CallerIdentity, reason: Optional[str] = None
    ) -> ApprovalWorkflow:
        async with self._locks.hold(workflow_id):
            workflow = await self._load(workflow_id)
            if workflow.requester_id != caller.agent_id and not self._is_override(caller):
                raise UnauthorizedError(
                    f"Agent {caller.agent_id} did not request workflow {workflow_id}"
                )
            if workflow.is_terminal:
                raise WorkflowAlreadyTerminal(
                    "Can only cancel pending or in-progress workflows"
                )
            expected_version = workflow.version
            workflow.status = WorkflowStatus.CANCELLED
            workflow.completed_at = utcnow()
            workflow.cancellation_reason = reason
            workflow = await self._repository.update_workflow(workflow, expected_version)

        logger.info(f"Cancelled workflow {workflow_id}: {reason or 'no reason given'}")
        return workflow

    async def stats(self, caller: CallerIdentity) -> WorkflowStats:
        workflows, _ = await self._repository.list_workflows(requester_id=caller.agent_id)
        pending = await self._repository.list_pending_approvals(caller.agent_id)
        return WorkflowStats(
            by_status=dict(Counter(wf.status.value for wf in workflows)),
            by_request_type=dict(Counter(wf.request_type.value for wf in workflows)),
            by_priority=dict(Counter(wf.priority.value for wf in workflows)),
            pending_approvals=len(pending),
        )
