"""Command line interface for approval workflows and bulk bookings."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from mediflow.batches import BulkBookingProcessor
from mediflow.booking import get_materializer
from mediflow.cli_utils.batch_file import load_batch_rows
from mediflow.config import load_config
from mediflow.exceptions import MediflowError, NotFoundError
from mediflow.models import ApprovalWorkflow, BulkBooking, StepDefinition
from mediflow.persistence import Repository, get_repository
from mediflow.security.context import CallerIdentity
from mediflow.security.policy import DirectoryIdentityContext
from mediflow.workflows import ApprovalWorkflowEngine

T = TypeVar("T")

app = typer.Typer(help="CLI for mediflow approval workflows and bulk bookings")

# Command groups
workflow_app = typer.Typer(help="Commands for managing approval workflows")
batch_app = typer.Typer(help="Commands for managing bulk bookings")

app.add_typer(workflow_app, name="workflow")
app.add_typer(batch_app, name="batch")

TokenOption = typer.Option(
    None, "--token", envvar="MEDIFLOW_TOKEN", help="Agent bearer token"
)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for mediflow"),
) -> None:
    """Mediflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class _Context:
    """Wires the engines to the configured collaborators."""

    def __init__(self) -> None:
        self.config = load_config()
        self.repository: Repository = get_repository()
        self.identity = DirectoryIdentityContext.from_config(self.config.identity)
        self.workflows = ApprovalWorkflowEngine(self.repository, self.identity)
        self.materializer = get_materializer(self.config.appointments)
        self.batches = BulkBookingProcessor(
            self.repository,
            self.identity,
            self.materializer,
            config=self.config.batch,
            commission_rate=self.config.appointments.commission_rate,
        )

    def caller(self, token: Optional[str]) -> CallerIdentity:
        return self.identity.resolve_caller(token or os.getenv("MEDIFLOW_TOKEN", ""))


def _run(action: Callable[[_Context], Awaitable[T]]) -> T:
    """Run ``action`` and turn domain errors into exit codes."""

    async def runner() -> T:
        ctx = _Context()
        try:
            return await action(ctx)
        finally:
            await ctx.materializer.aclose()
            await ctx.repository.close()

    try:
        return asyncio.run(runner())
    except NotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except MediflowError as exc:
        typer.secho(f"{exc.__class__.__name__}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _echo_workflow(wf: ApprovalWorkflow) -> None:
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")
    typer.echo(
        f"{wf.request_type.value} {wf.request_id} - {wf.title} "
        f"(priority {wf.priority.value}, step {wf.current_step}/{wf.total_steps})"
    )
    if wf.cancellation_reason:
        typer.echo(f"Cancelled: {wf.cancellation_reason}")
    for step in wf.steps:
        line = f"- [{step.step_order}] {step.step_name} ({step.id}): {step.status.value}"
        if step.approver_id:
            line += f" approver={step.approver_id}"
        if step.is_optional:
            line += " optional"
        if step.processed_at:
            line += f" by {step.processed_by} at {step.processed_at:%Y-%m-%d %H:%M}"
        typer.echo(line)
        if step.comments:
            typer.echo(f"    {step.comments}")


def _echo_batch(batch: BulkBooking) -> None:
    typer.echo(f"Bulk booking {batch.batch_number} ({batch.id}): {batch.status.value}")
    typer.echo(
        f"{batch.batch_name}: {batch.successful_items} succeeded, "
        f"{batch.failed_items} failed, {batch.total_items} total"
    )
    if batch.notes:
        typer.echo(f"Notes: {batch.notes}")
    for item in batch.items:
        line = (
            f"- [{item.sequence_number}] {item.id} {item.patient_name} "
            f"{item.appointment_date} {item.appointment_time} doctor={item.doctor_id}: "
            f"{item.status.value}"
        )
        if item.appointment_id:
            line += f" appointment={item.appointment_id}"
        if item.error_message:
            line += f" ({item.error_message})"
        typer.echo(line)


def _parse_step(raw: str) -> StepDefinition:
    # NAME[:APPROVER[:optional]]
    parts = raw.split(":")
    if not parts[0]:
        raise typer.BadParameter(f"Step {raw!r} has no name")
    return StepDefinition(
        step_name=parts[0],
        approver_id=parts[1] if len(parts) > 1 and parts[1] else None,
        is_optional=len(parts) > 2 and parts[2].lower() in ("optional", "opt", "true"),
    )


# ---------------------------------------------------------------------------
# Workflows


@workflow_app.command("create")
def workflow_create(
    request_type: str = typer.Option(..., "--type", help="Business request kind"),
    request_id: str = typer.Option(..., help="Id of the entity being approved"),
    step: List[str] = typer.Option(
        ..., help="Approval step as NAME[:APPROVER[:optional]]; repeat in order"
    ),
    title: Optional[str] = None,
    description: Optional[str] = None,
    justification: Optional[str] = None,
    estimated_value: Optional[float] = None,
    priority: str = "MEDIUM",
    token: Optional[str] = TokenOption,
) -> None:
    """
    Create an approval workflow routed through the given steps.

    Example:
        mediflow workflow create --type REFUND_REQUEST --request-id apt-42 \\
            --step "Supervisor:agent-2" --step "Finance:agent-9:optional"
    """
    steps = [_parse_step(s) for s in step]

    async def action(ctx: _Context) -> ApprovalWorkflow:
        return await ctx.workflows.create(
            ctx.caller(token),
            request_type.upper(),
            request_id,
            steps,
            title=title,
            description=description,
            justification=justification,
            estimated_value=estimated_value,
            priority=priority.upper(),
        )

    _echo_workflow(_run(action))


@workflow_app.command("list")
def workflow_list(
    status: Optional[str] = None,
    request_type: Optional[str] = typer.Option(None, "--type"),
    priority: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    token: Optional[str] = TokenOption,
) -> None:
    """List the caller's workflows, newest first."""

    async def action(ctx: _Context):
        return await ctx.workflows.list_workflows(
            ctx.caller(token),
            status=status.upper() if status else None,
            request_type=request_type.upper() if request_type else None,
            priority=priority.upper() if priority else None,
            page=page,
            limit=limit,
        )

    result = _run(action)
    if not result.items:
        typer.echo("No workflows found")
        return
    for wf in result.items:
        typer.echo(
            f"{wf.id}\t{wf.status.value}\t{wf.request_type.value}\t"
            f"step {wf.current_step}/{wf.total_steps}\t{wf.title}"
        )
    typer.echo(f"Page {result.current_page}/{result.total_pages} ({result.total_items} total)")


@workflow_app.command("show")
def workflow_show(workflow_id: str, token: Optional[str] = TokenOption) -> None:
    """Show a workflow and the state of each of its steps."""

    async def action(ctx: _Context) -> ApprovalWorkflow:
        return await ctx.workflows.get(workflow_id, ctx.caller(token))

    _echo_workflow(_run(action))


@workflow_app.command("decide")
def workflow_decide(
    workflow_id: str,
    step_id: str,
    verdict: str = typer.Argument(..., help="APPROVED or REJECTED"),
    comments: Optional[str] = None,
    notes: Optional[str] = typer.Option(None, help="Approver notes"),
    token: Optional[str] = TokenOption,
) -> None:
    """Approve or reject the active step of a workflow."""

    async def action(ctx: _Context) -> ApprovalWorkflow:
        return await ctx.workflows.decide_step(
            workflow_id,
            step_id,
            ctx.caller(token),
            verdict.upper(),
            comments=comments,
            approver_notes=notes,
        )

    _echo_workflow(_run(action))


@workflow_app.command("cancel")
def workflow_cancel(
    workflow_id: str,
    reason: Optional[str] = None,
    token: Optional[str] = TokenOption,
) -> None:
    """Cancel a pending or in-progress workflow."""

    async def action(ctx: _Context) -> ApprovalWorkflow:
        return await ctx.workflows.cancel(workflow_id, ctx.caller(token), reason)

    _echo_workflow(_run(action))


@workflow_app.command("pending")
def workflow_pending(token: Optional[str] = TokenOption) -> None:
    """List workflows waiting on the caller's decision."""

    async def action(ctx: _Context) -> list[ApprovalWorkflow]:
        return await ctx.workflows.pending_approvals(ctx.caller(token))

    workflows = _run(action)
    if not workflows:
        typer.echo("No pending approvals")
        return
    for wf in workflows:
        step = wf.active_step()
        typer.echo(f"{wf.id}\t{step.id if step else '-'}\t{wf.priority.value}\t{wf.title}")


@workflow_app.command("stats")
def workflow_stats(token: Optional[str] = TokenOption) -> None:
    """Summarize the caller's workflows."""

    async def action(ctx: _Context):
        return await ctx.workflows.stats(ctx.caller(token))

    typer.echo(_run(action).model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Bulk bookings


@batch_app.command("submit")
def batch_submit(
    path: Path = typer.Argument(..., help="CSV, JSON or YAML file of appointments"),
    customer: str = typer.Option(..., help="Customer the appointments are booked for"),
    name: str = typer.Option(..., help="Batch name"),
    description: Optional[str] = None,
    process: bool = typer.Option(True, help="Process the batch right after submission"),
    token: Optional[str] = TokenOption,
) -> None:
    """
    Submit a bulk booking from a spreadsheet-like file.

    Example:
        mediflow batch submit ./appointments.csv --customer cust-1 --name "March checkups"
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        rows: List[dict[str, Any]] = load_batch_rows(path)
    except (ValueError, OSError) as exc:
        typer.secho(f"Could not read {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def action(ctx: _Context) -> BulkBooking:
        return await ctx.batches.submit(
            ctx.caller(token), customer, name, rows, description=description, process=process
        )

    _echo_batch(_run(action))


@batch_app.command("list")
def batch_list(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    token: Optional[str] = TokenOption,
) -> None:
    """List the caller's bulk bookings, newest first."""

    async def action(ctx: _Context):
        return await ctx.batches.list_batches(
            ctx.caller(token),
            status=status.upper() if status else None,
            page=page,
            limit=limit,
        )

    result = _run(action)
    if not result.items:
        typer.echo("No bulk bookings found")
        return
    for batch in result.items:
        typer.echo(
            f"{batch.id}\t{batch.batch_number}\t{batch.status.value}\t"
            f"{batch.successful_items}/{batch.total_items}\t{batch.batch_name}"
        )
    typer.echo(f"Page {result.current_page}/{result.total_pages} ({result.total_items} total)")


@batch_app.command("show")
def batch_show(batch_id: str, token: Optional[str] = TokenOption) -> None:
    """Show a bulk booking and the outcome of each item."""

    async def action(ctx: _Context) -> BulkBooking:
        return await ctx.batches.get(batch_id, ctx.caller(token))

    _echo_batch(_run(action))


@batch_app.command("process")
def batch_process(batch_id: str, token: Optional[str] = TokenOption) -> None:
    """Process the pending items of a bulk booking submitted with --no-process."""

    async def action(ctx: _Context) -> BulkBooking:
        return await ctx.batches.process(batch_id, ctx.caller(token))

    _echo_batch(_run(action))


@batch_app.command("retry")
def batch_retry(
    batch_id: str,
    item: Optional[List[str]] = typer.Option(
        None, help="Item id to retry; repeat for several. Defaults to all failed items"
    ),
    token: Optional[str] = TokenOption,
) -> None:
    """Re-attempt failed items of a bulk booking."""

    async def action(ctx: _Context) -> BulkBooking:
        return await ctx.batches.retry(batch_id, ctx.caller(token), item or None)

    _echo_batch(_run(action))


@batch_app.command("cancel")
def batch_cancel(
    batch_id: str,
    reason: Optional[str] = None,
    token: Optional[str] = TokenOption,
) -> None:
    """Cancel a bulk booking that has not completed."""

    async def action(ctx: _Context) -> BulkBooking:
        return await ctx.batches.cancel(batch_id, ctx.caller(token), reason)

    _echo_batch(_run(action))


@batch_app.command("stats")
def batch_stats(token: Optional[str] = TokenOption) -> None:
    """Summarize the caller's bulk bookings."""

    async def action(ctx: _Context):
        return await ctx.batches.stats(ctx.caller(token))

    typer.echo(_run(action).model_dump_json(indent=2, exclude={"recent"}))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
