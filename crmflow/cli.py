"""Command line interface for running and managing crmflow."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from crmflow import definition
from crmflow.catalog import ACTIONS, TRIGGERS
from crmflow.config import CrmflowConfig, load_config
from crmflow.contracts import DomainEvent, EnrollmentStatus, Workflow, WorkflowStatus
from crmflow.errors import CrmflowError
from crmflow.runtime import Runtime, build_runtime
from crmflow.transports import get_transport

app = typer.Typer(help="CLI for crmflow automation workflows")

# Command groups
scheduler_app = typer.Typer(help="Run the wait/retry scheduler")
events_app = typer.Typer(help="Consume or publish domain events")
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")
catalog_app = typer.Typer(help="Supported triggers and actions")

app.add_typer(scheduler_app, name="scheduler")
app.add_typer(events_app, name="events")
app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(catalog_app, name="catalog")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to config.yaml (default: $CRMFLOW_CONFIG)"
    ),
) -> None:
    """crmflow CLI entry point."""
    cfg = load_config(str(config) if config else None)
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = cfg


def _config(ctx: typer.Context) -> CrmflowConfig:
    return ctx.obj if isinstance(ctx.obj, CrmflowConfig) else load_config()


def _runtime(ctx: typer.Context) -> Runtime:
    return build_runtime(_config(ctx))


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _read_document(path: Path) -> Dict[str, Any]:
    if not path.exists():
        _fail(f"File not found: {path}")
    data = yaml.safe_load(path.read_text())
    if not isinstance(data, dict):
        _fail(f"{path} does not contain a workflow document")
    return data


def _parse_when(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO datetime: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----------------------------------------------------------------------
# scheduler / events


@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Resume enrollments whose wait or retry delay has elapsed.

    Runs a recovery pass first, then polls every
    ``scheduler.poll_interval_seconds``. Several schedulers may share one
    database; each due enrollment is resumed by exactly one of them.

    Example:
        crmflow scheduler run
        crmflow scheduler run --lifespan 60
    """
    runtime = _runtime(ctx)
    typer.echo("Starting scheduler")
    asyncio.run(runtime.scheduler.run(lifespan=lifespan))


@events_app.command("listen")
def events_listen(
    ctx: typer.Context,
    topic: Optional[str] = typer.Option(None, help="Topic to consume (default from config)"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Enroll contacts from domain events on the configured transport.

    Example:
        crmflow events listen --topic crmflow.events
    """
    cfg = _config(ctx)
    runtime = build_runtime(cfg)
    transport = get_transport(config=cfg)

    async def _listen() -> None:
        await runtime.start()
        async with transport:
            await runtime.triggers.listen(
                transport, topic or cfg.transport.topic, lifespan=lifespan
            )

    typer.echo(f"Listening on {topic or cfg.transport.topic}")
    asyncio.run(_listen())


@events_app.command("publish")
def events_publish(
    ctx: typer.Context,
    event_type: str,
    tenant: str = typer.Option(..., "--tenant", help="Tenant id"),
    contact: str = typer.Option(..., "--contact", help="Contact id"),
    payload: str = typer.Option("{}", help="Event payload as JSON"),
    topic: Optional[str] = typer.Option(None, help="Topic to publish to"),
) -> None:
    """
    Publish a domain event, mostly useful for testing workflows.

    Example:
        crmflow events publish form_submitted --tenant t1 --contact c1 \\
            --payload '{"form_id": "f1"}'
    """
    cfg = _config(ctx)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"payload is not valid JSON: {exc}")
    event = DomainEvent(event_type=event_type, tenant_id=tenant, contact_id=contact, payload=data)
    transport = get_transport(config=cfg)

    async def _publish() -> None:
        async with transport:
            await transport.publish(topic or cfg.transport.topic, event)

    asyncio.run(_publish())
    typer.echo(event.event_id)


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow document (YAML or JSON) without storing it.

    Prints every structural problem found and exits non-zero if any.

    Example:
        crmflow workflow validate ./workflows/lead_nurture.yaml
    """
    try:
        workflow = Workflow.model_validate(_read_document(path))
    except ValueError as exc:
        _fail(f"Invalid workflow document: {exc}")
    errors = definition.collect_errors(workflow)
    if not errors:
        typer.echo(f"{workflow.name}: OK ({len(workflow.steps)} steps)")
        return
    for error in errors:
        ids = f" [{', '.join(error.step_ids)}]" if error.step_ids else ""
        typer.secho(f"{error.code}: {error.message}{ids}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@workflow_app.command("import")
def workflow_import(
    ctx: typer.Context,
    path: Path,
    activate: bool = typer.Option(False, help="Activate after importing"),
) -> None:
    """
    Store a workflow document in the configured repository.

    Example:
        crmflow workflow import ./workflows/lead_nurture.yaml --activate
    """
    document = _read_document(path)
    runtime = _runtime(ctx)

    async def _import() -> Workflow:
        workflow = await runtime.service.import_workflow(document)
        if activate:
            workflow = await runtime.service.activate_workflow(workflow.id)
        return workflow

    try:
        workflow = asyncio.run(_import())
    except (CrmflowError, ValueError) as exc:
        _fail(f"Import failed: {exc}")
    typer.echo(f"{workflow.id}\t{workflow.status.value}\tv{workflow.version}")


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, help="Only this tenant"),
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """
    List workflows with their status and version.

    Example:
        crmflow workflow list --status active
        # Output: 5f0c...    active    v3    Lead nurture
    """
    runtime = _runtime(ctx)
    workflows = asyncio.run(runtime.service.list_workflows(tenant_id=tenant, status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\tv{wf.version}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow's trigger, steps and connections."""
    runtime = _runtime(ctx)
    try:
        wf = asyncio.run(runtime.service.get_workflow(workflow_id))
    except CrmflowError:
        _fail("Workflow not found")
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value}, v{wf.version})")
    typer.echo(f"Trigger: {wf.trigger.event_type} {wf.trigger.filters or ''}".rstrip())
    for step in wf.steps:
        targets = [
            f"{c.branch or 'next'} -> {c.to_step_id}" for c in wf.outgoing(step.id)
        ]
        label = f" ({step.name})" if step.name else ""
        typer.echo(f"- {step.id}{label}: {step.type.value}" + (
            f" [{', '.join(targets)}]" if targets else ""
        ))


@workflow_app.command("activate")
def workflow_activate(ctx: typer.Context, workflow_id: str) -> None:
    """Validate and activate a workflow."""
    runtime = _runtime(ctx)
    try:
        wf = asyncio.run(runtime.service.activate_workflow(workflow_id))
    except CrmflowError as exc:
        _fail(f"Activation failed: {exc}")
    typer.echo(f"{wf.id}\t{wf.status.value}\tv{wf.version}")


@workflow_app.command("stats")
def workflow_stats(
    ctx: typer.Context,
    workflow_id: str,
    since: Optional[str] = typer.Option(None, help="ISO datetime, inclusive"),
    until: Optional[str] = typer.Option(None, help="ISO datetime, exclusive"),
) -> None:
    """
    Show enrollment counters for a workflow.

    Example:
        crmflow workflow stats 5f0c... --since 2024-01-01
    """
    runtime = _runtime(ctx)
    try:
        stats = asyncio.run(
            runtime.service.get_analytics(
                workflow_id, _parse_when(since), _parse_when(until)
            )
        )
    except CrmflowError:
        _fail("Workflow not found")
    typer.echo(stats.model_dump_json(indent=2))


# ----------------------------------------------------------------------
# enrollment


@enrollment_app.command("list")
def enrollment_list(
    ctx: typer.Context,
    workflow_id: str,
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Only this status"),
    contact: Optional[str] = typer.Option(None, help="Only this contact"),
) -> None:
    """List enrollments of a workflow."""
    runtime = _runtime(ctx)
    try:
        enrollments = asyncio.run(
            runtime.service.list_enrollments(workflow_id, status=status, contact_id=contact)
        )
    except CrmflowError:
        _fail("Workflow not found")
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.contact_id}\t{e.status.value}\t{e.current_step_id or '-'}"
        )


@enrollment_app.command("show")
def enrollment_show(ctx: typer.Context, enrollment_id: str) -> None:
    """
    Show an enrollment and its step history.

    Example:
        crmflow enrollment show 9a1e...
        # Output: Enrollment 9a1e...: waiting (contact c1, workflow 5f0c... v2)
        #         - entry: triggered (2024-01-01 10:00 -> 10:00)
        #         - delay: waiting (2024-01-01 10:00 -> ...)
    """
    runtime = _runtime(ctx)
    try:
        e = asyncio.run(runtime.service.get_enrollment(enrollment_id))
    except CrmflowError:
        _fail("Enrollment not found")
    typer.echo(
        f"Enrollment {e.id}: {e.status.value} "
        f"(contact {e.contact_id}, workflow {e.workflow_id} v{e.workflow_version})"
    )
    if e.resume_at:
        typer.echo(f"Resumes at: {e.resume_at.isoformat()}")
    if e.last_error:
        typer.echo(f"Last error: {e.last_error}")
    for entry in e.history:
        span = f"{entry.entered_at} -> {entry.exited_at or '...'}"
        detail = f" {entry.detail}" if entry.detail else ""
        typer.echo(f"- {entry.step_id or '*'}: {entry.outcome} ({span}){detail}")


@enrollment_app.command("cancel")
def enrollment_cancel(
    ctx: typer.Context,
    enrollment_id: str,
    reason: str = typer.Option("cancelled by user", help="Recorded in history"),
) -> None:
    """Cancel a running or waiting enrollment."""
    runtime = _runtime(ctx)
    try:
        e = asyncio.run(runtime.service.cancel_enrollment(enrollment_id, reason))
    except CrmflowError:
        _fail("Enrollment not found")
    typer.echo(f"{e.id}\t{e.status.value}")


# ----------------------------------------------------------------------
# catalog


@catalog_app.command("triggers")
def catalog_triggers() -> None:
    """List supported trigger event types."""
    for trigger in TRIGGERS:
        typer.echo(f"{trigger.type}\t{trigger.name}")


@catalog_app.command("actions")
def catalog_actions() -> None:
    """List supported action kinds and their required params."""
    for action in ACTIONS:
        required: List[str] = action.required
        typer.echo(f"{action.kind.value}\t{action.name}\t{', '.join(required) or '-'}")
