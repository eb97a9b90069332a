import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from pykocron.config import settings
from pykocron.db import DbConnection, init_db, list_invocations, list_triggers
from pykocron.errors import PykocronError
from pykocron.gateway import AgentExecutionGateway
from pykocron.models import ScheduledTriggerInvocation, TriggerScope
from pykocron.scheduler import run_scheduler
from pykocron.scheduling import format_instant, parse_instant
from pykocron import service


def _get_db_and_data_dir() -> tuple[DbConnection, Path]:
    return init_db(settings.db_path), settings.data


def _scope_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--agent", default="default", show_default=True)(func)
    func = click.option("--project", default="default", show_default=True)(func)
    func = click.option("--tenant", default="default", show_default=True)(func)
    return func


def _scope(tenant: str, project: str, agent: str) -> TriggerScope:
    return TriggerScope(tenant_id=tenant, project_id=project, agent_id=agent)


def _parse_run_at(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_instant(value)
    except ValueError as e:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}") from e


def _parse_payload(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise click.BadParameter("payload must be a JSON object")
    return payload


def _echo_invocation(invocation: ScheduledTriggerInvocation) -> None:
    line = (
        f"{invocation.id} | {invocation.status} | "
        f"{format_instant(invocation.scheduled_for)} | attempt {invocation.attempt_number}"
    )
    if invocation.error_message:
        line += f" | {invocation.error_message}"
    click.echo(line)


def _gateway(db: DbConnection, data_dir: Path) -> AgentExecutionGateway:
    return AgentExecutionGateway(
        db, data_dir, model=settings.model, cli_path=settings.cli_path
    )


@click.group(invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """pykocron: durable scheduled triggers for Claude agents"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command()
def scheduler() -> None:
    """Run the scheduler daemon (one durable runner per enabled trigger)."""
    db, data_dir = _get_db_and_data_dir()
    asyncio.run(run_scheduler(db, data_dir))


@main.command()
def triggers() -> None:
    """List all scheduled triggers."""
    db, _ = _get_db_and_data_dir()
    all_triggers = list_triggers(db)
    if not all_triggers:
        click.echo("No scheduled triggers.")
        return
    click.echo(
        f"{'ID':<10} {'Scope':<30} {'Name':<20} {'Schedule':<26} {'Enabled':<8} {'Owner'}"
    )
    click.echo("-" * 110)
    for trigger in all_triggers:
        scope = f"{trigger.tenant_id}/{trigger.project_id}/{trigger.agent_id}"
        schedule = (
            f"at {format_instant(trigger.run_at)}"
            if trigger.run_at
            else f"{trigger.cron_expression} {trigger.cron_timezone}"
        )
        click.echo(
            f"{trigger.id:<10} {scope:<30} {trigger.name[:20]:<20} {schedule:<26}"
            f" {'yes' if trigger.enabled else 'no':<8} {trigger.workflow_run_id or '-'}"
        )


@main.command("add-trigger")
@_scope_options
@click.option("--name", default="")
@click.option("--description")
@click.option("--cron", "cron_expression", help="Cron expression for recurring runs.")
@click.option("--timezone", "cron_timezone", default="UTC", show_default=True)
@click.option(
    "--run-at", callback=_parse_run_at, help="ISO 8601 instant for a one-time run."
)
@click.option("--message", "message_template", help="Template with {{path}} slots.")
@click.option("--payload", callback=_parse_payload, help="JSON object.")
@click.option("--max-retries", type=int, default=settings.default_max_retries)
@click.option(
    "--retry-delay", type=int, default=settings.default_retry_delay_seconds
)
@click.option("--timeout", type=int, default=settings.default_timeout_seconds)
@click.option("--disabled", is_flag=True, help="Create the trigger disabled.")
def add_trigger(
    tenant: str,
    project: str,
    agent: str,
    name: str,
    description: str | None,
    cron_expression: str | None,
    cron_timezone: str,
    run_at: datetime | None,
    message_template: str | None,
    payload: dict[str, Any] | None,
    max_retries: int,
    retry_delay: int,
    timeout: int,
    disabled: bool,
) -> None:
    """Create a scheduled trigger (exactly one of --cron and --run-at)."""
    db, _ = _get_db_and_data_dir()
    try:
        trigger = service.create_scheduled_trigger(
            db,
            _scope(tenant, project, agent),
            name=name,
            description=description,
            cron_expression=cron_expression,
            cron_timezone=cron_timezone,
            run_at=run_at,
            message_template=message_template,
            payload=payload,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay,
            timeout_seconds=timeout,
            enabled=not disabled,
        )
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Created trigger {trigger.id}")


@main.command()
@_scope_options
@click.argument("trigger_id")
def enable(tenant: str, project: str, agent: str, trigger_id: str) -> None:
    """Enable a trigger; the scheduler picks it up on its next pass."""
    db, _ = _get_db_and_data_dir()
    try:
        service.set_trigger_enabled(db, _scope(tenant, project, agent), trigger_id, True)
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Enabled trigger {trigger_id}")


@main.command()
@_scope_options
@click.argument("trigger_id")
def disable(tenant: str, project: str, agent: str, trigger_id: str) -> None:
    """Disable a trigger; its runner stops at its next ownership check."""
    db, _ = _get_db_and_data_dir()
    try:
        service.set_trigger_enabled(db, _scope(tenant, project, agent), trigger_id, False)
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Disabled trigger {trigger_id}")


@main.command()
@_scope_options
@click.argument("trigger_id")
def delete(tenant: str, project: str, agent: str, trigger_id: str) -> None:
    """Delete a trigger and cancel its open invocations."""
    db, _ = _get_db_and_data_dir()
    try:
        cancelled = service.delete_scheduled_trigger(
            db, _scope(tenant, project, agent), trigger_id
        )
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Deleted trigger {trigger_id} ({cancelled} invocation(s) cancelled)")


@main.command()
@_scope_options
@click.argument("trigger_id")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed", "cancelled"]),
)
@click.option("--limit", type=click.IntRange(1, 100), default=50, show_default=True)
def invocations(
    tenant: str,
    project: str,
    agent: str,
    trigger_id: str,
    status: str | None,
    limit: int,
) -> None:
    """List a trigger's invocations, newest first."""
    db, _ = _get_db_and_data_dir()
    rows = list_invocations(
        db, _scope(tenant, project, agent), trigger_id, status=status, limit=limit
    )
    if not rows:
        click.echo("No invocations.")
        return
    for invocation in rows:
        _echo_invocation(invocation)


@main.command()
@_scope_options
@click.argument("trigger_id")
@click.argument("invocation_id")
def cancel(
    tenant: str, project: str, agent: str, trigger_id: str, invocation_id: str
) -> None:
    """Cancel a pending or running invocation."""
    db, _ = _get_db_and_data_dir()
    try:
        previous = service.cancel_invocation(
            db, _scope(tenant, project, agent), trigger_id, invocation_id
        )
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    if previous == "cancelled":
        click.echo(f"Invocation {invocation_id} was already cancelled")
    else:
        click.echo(f"Cancelled invocation {invocation_id} (was {previous})")


@main.command("run-now")
@_scope_options
@click.argument("trigger_id")
def run_now(tenant: str, project: str, agent: str, trigger_id: str) -> None:
    """Execute a trigger immediately, with its retry policy."""
    db, data_dir = _get_db_and_data_dir()
    try:
        invocation = asyncio.run(
            service.run_trigger_now(
                db, _scope(tenant, project, agent), trigger_id, _gateway(db, data_dir)
            )
        )
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    _echo_invocation(invocation)


@main.command()
@_scope_options
@click.argument("trigger_id")
@click.argument("invocation_id")
def rerun(
    tenant: str, project: str, agent: str, trigger_id: str, invocation_id: str
) -> None:
    """Run a finished invocation again as a new invocation."""
    db, data_dir = _get_db_and_data_dir()
    try:
        invocation = asyncio.run(
            service.rerun_invocation(
                db,
                _scope(tenant, project, agent),
                trigger_id,
                invocation_id,
                _gateway(db, data_dir),
            )
        )
    except PykocronError as e:
        raise click.ClickException(str(e)) from e
    _echo_invocation(invocation)


if __name__ == "__main__":
    main()
