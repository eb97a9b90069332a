"""Operator actions on triggers and invocations.

These are the management entry points used by the CLI.  Changes that affect
a live runner (disable, delete, reschedule) are only written to the
database; runners pick them up at their next ownership check.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from pykocron import db as dbops
from pykocron.db import DbConnection
from pykocron.errors import (
    InvalidInvocationStateError,
    InvocationNotFoundError,
    TriggerNotFoundError,
)
from pykocron.gateway import ExecutionGateway
from pykocron.models import ScheduledTrigger, ScheduledTriggerInvocation, TriggerScope
from pykocron.runner import TriggerRunner
from pykocron.scheduling import (
    Clock,
    SystemClock,
    runner_id_for,
    validate_policy,
    validate_schedule,
)
from pykocron.stores import SqliteInvocationStore, SqliteTriggerConfigStore
from pykocron.suspend import AsyncioSuspend, DurableSuspend, SqliteCheckpointStore

log = logging.getLogger(__name__)

_SCHEDULE_FIELDS = ("cron_expression", "cron_timezone", "run_at")
_POLICY_FIELDS = ("max_retries", "retry_delay_seconds", "timeout_seconds")


def require_trigger(
    db: DbConnection, scope: TriggerScope, trigger_id: str
) -> ScheduledTrigger:
    trigger = dbops.get_trigger(db, scope, trigger_id)
    if trigger is None:
        raise TriggerNotFoundError(f"Scheduled trigger {trigger_id} not found")
    return trigger


def require_invocation(
    db: DbConnection, scope: TriggerScope, trigger_id: str, invocation_id: str
) -> ScheduledTriggerInvocation:
    invocation = dbops.get_invocation(db, scope, trigger_id, invocation_id)
    if invocation is None:
        raise InvocationNotFoundError(f"Invocation {invocation_id} not found")
    return invocation


def create_scheduled_trigger(
    db: DbConnection,
    scope: TriggerScope,
    *,
    trigger_id: str | None = None,
    cron_expression: str | None = None,
    cron_timezone: str = "UTC",
    run_at: datetime | None = None,
    **fields: Any,
) -> ScheduledTrigger:
    validate_schedule(cron_expression, run_at, cron_timezone)
    validate_policy(*(fields.get(key) for key in _POLICY_FIELDS))
    trigger = dbops.create_trigger(
        db,
        scope=scope,
        trigger_id=trigger_id or uuid.uuid4().hex[:8],
        cron_expression=cron_expression,
        cron_timezone=cron_timezone,
        run_at=run_at,
        **fields,
    )
    log.info("Created scheduled trigger %s", trigger.id)
    return trigger


def update_scheduled_trigger(
    db: DbConnection, scope: TriggerScope, trigger_id: str, **updates: Any
) -> ScheduledTrigger:
    trigger = require_trigger(db, scope, trigger_id)

    if any(key in updates for key in _SCHEDULE_FIELDS):
        validate_schedule(
            updates.get("cron_expression", trigger.cron_expression),
            updates.get("run_at", trigger.run_at),
            updates.get("cron_timezone", trigger.cron_timezone),
        )
    if any(key in updates for key in _POLICY_FIELDS):
        validate_policy(*(updates.get(key) for key in _POLICY_FIELDS))

    dbops.update_trigger(db, scope, trigger_id, **updates)

    if any(key in updates for key in _SCHEDULE_FIELDS):
        # The old anchor and pending target belong to the old schedule
        SqliteCheckpointStore(db, runner_id_for(scope, trigger_id)).clear()
        log.info("Schedule of trigger %s changed, runner checkpoint reset", trigger_id)

    return require_trigger(db, scope, trigger_id)


def set_trigger_enabled(
    db: DbConnection, scope: TriggerScope, trigger_id: str, enabled: bool
) -> ScheduledTrigger:
    was_enabled = require_trigger(db, scope, trigger_id).enabled
    updates: dict[str, Any] = {"enabled": enabled}
    if enabled:
        # Released so the supervisor can claim it again
        updates["workflow_run_id"] = None
    trigger = update_scheduled_trigger(db, scope, trigger_id, **updates)
    if enabled and not was_enabled:
        # Occurrences missed while disabled are skipped, not replayed
        SqliteCheckpointStore(db, runner_id_for(scope, trigger_id)).clear()
    return trigger


def delete_scheduled_trigger(
    db: DbConnection, scope: TriggerScope, trigger_id: str
) -> int:
    """Delete a trigger, cancelling its open invocations.

    Returns the number of invocations cancelled.
    """
    require_trigger(db, scope, trigger_id)
    cancelled = dbops.cancel_open_invocations(db, scope, trigger_id)
    if cancelled:
        log.info("Cancelled %d open invocation(s) of trigger %s", cancelled, trigger_id)
    dbops.delete_trigger(db, scope, trigger_id)
    SqliteCheckpointStore(db, runner_id_for(scope, trigger_id)).clear()
    return cancelled


def cancel_invocation(
    db: DbConnection, scope: TriggerScope, trigger_id: str, invocation_id: str
) -> str:
    """Cancel a pending or running invocation; return its previous status."""
    invocation = require_invocation(db, scope, trigger_id, invocation_id)

    if invocation.status in ("completed", "failed"):
        raise InvalidInvocationStateError(
            f"Cannot cancel invocation with status: {invocation.status}"
        )
    if invocation.status == "cancelled":
        return "cancelled"

    dbops.mark_invocation_cancelled(db, scope, trigger_id, invocation_id)
    log.info(
        "Invocation %s of trigger %s cancelled (was %s)",
        invocation_id,
        trigger_id,
        invocation.status,
    )
    return invocation.status


async def run_trigger_now(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    gateway: ExecutionGateway,
    *,
    suspend: DurableSuspend | None = None,
    clock: Clock | None = None,
) -> ScheduledTriggerInvocation:
    """Execute a trigger immediately, outside its schedule, with retries."""
    trigger = require_trigger(db, scope, trigger_id)
    now = (clock or SystemClock()).now()
    key = f"manual-run-{trigger_id}-{int(now.timestamp() * 1000)}"
    return await _run_manual(db, trigger, key, now, gateway, suspend, clock)


async def rerun_invocation(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    gateway: ExecutionGateway,
    *,
    suspend: DurableSuspend | None = None,
    clock: Clock | None = None,
) -> ScheduledTriggerInvocation:
    """Run a finished invocation again as a new invocation."""
    original = require_invocation(db, scope, trigger_id, invocation_id)
    if original.status in ("pending", "running"):
        raise InvalidInvocationStateError(
            f"Cannot rerun invocation with status: {original.status}. "
            "Wait for it to complete or cancel it first."
        )

    trigger = require_trigger(db, scope, trigger_id)
    now = (clock or SystemClock()).now()
    key = f"manual-rerun-{invocation_id}-{int(now.timestamp() * 1000)}"
    return await _run_manual(db, trigger, key, now, gateway, suspend, clock)


async def _run_manual(
    db: DbConnection,
    trigger: ScheduledTrigger,
    key: str,
    now: datetime,
    gateway: ExecutionGateway,
    suspend: DurableSuspend | None,
    clock: Clock | None,
) -> ScheduledTriggerInvocation:
    invocations = SqliteInvocationStore(db)
    created = invocations.create_if_absent(
        trigger.scope,
        trigger.id,
        idempotency_key=key,
        scheduled_for=now,
        resolved_payload=trigger.payload,
    )
    runner = TriggerRunner(
        trigger.scope,
        trigger.id,
        triggers=SqliteTriggerConfigStore(db),
        invocations=invocations,
        gateway=gateway,
        suspend=suspend or AsyncioSuspend(),
        clock=clock,
    )
    log.info("Manual run of trigger %s as invocation %s", trigger.id, created.invocation.id)
    await runner.execute_with_retries(trigger, created.invocation)
    return require_invocation(db, trigger.scope, trigger.id, created.invocation.id)
