"""Time arithmetic for scheduled triggers.

Everything here is pure: "now" is always passed in, so the runner can be
driven by a fake clock in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from pykocron.errors import ConfigurationError
from pykocron.models import ScheduledTrigger, TriggerScope

MIN_SLEEP_MS = 1000


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def format_instant(value: datetime) -> str:
    """Render *value* as UTC ISO 8601 with millisecond precision and a ``Z``.

    This is the persisted form of ``scheduled_for`` and part of every
    idempotency key, so it must never change shape.
    """
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone {name!r}") from e


def validate_schedule(
    cron_expression: str | None,
    run_at: datetime | None,
    cron_timezone: str | None = "UTC",
) -> None:
    """Reject schedules the runner could not evaluate.

    Exactly one of *cron_expression* and *run_at* must be given.
    """
    if cron_expression and run_at is not None:
        raise ConfigurationError("Cannot specify both cron_expression and run_at")
    if not cron_expression and run_at is None:
        raise ConfigurationError("Trigger must have either cron_expression or run_at")
    if cron_expression:
        if not croniter.is_valid(cron_expression):
            raise ConfigurationError(f"Invalid cron expression {cron_expression!r}")
        _zone(cron_timezone)


def validate_policy(
    max_retries: int | None = None,
    retry_delay_seconds: int | None = None,
    timeout_seconds: int | None = None,
) -> None:
    """Reject an execution policy before it is written.

    ``None`` means the column is left unset and the model default applies.
    """
    if max_retries is not None and max_retries < 0:
        raise ConfigurationError(f"max_retries must be >= 0, got {max_retries}")
    if retry_delay_seconds is not None and retry_delay_seconds < 0:
        raise ConfigurationError(
            f"retry_delay_seconds must be >= 0, got {retry_delay_seconds}"
        )
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ConfigurationError(
            f"timeout_seconds must be > 0, got {timeout_seconds}"
        )


def compute_next_execution(
    trigger: ScheduledTrigger,
    last_scheduled_for: datetime | None,
    now: datetime,
) -> tuple[datetime, bool]:
    """Return ``(next_instant, is_one_time)`` for *trigger*.

    One-time triggers always return ``run_at``.  Cron triggers are anchored
    to *last_scheduled_for* when known, so a late wake-up or a long run does
    not shift later occurrences; *now* is only used on the first cycle.
    """
    validate_schedule(trigger.cron_expression, trigger.run_at, trigger.cron_timezone)

    if trigger.run_at is not None:
        return trigger.run_at.astimezone(timezone.utc), True

    base = last_scheduled_for if last_scheduled_for is not None else now
    base = base.astimezone(_zone(trigger.cron_timezone))
    try:
        next_local = croniter(trigger.cron_expression, base).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise ConfigurationError(
            f"Failed to calculate next execution time from {trigger.cron_expression!r}"
        ) from e
    return next_local.astimezone(timezone.utc), False


def compute_sleep_ms(
    target: datetime, now: datetime, minimum_ms: int = MIN_SLEEP_MS
) -> int:
    """Milliseconds to wait until *target*, never less than *minimum_ms*."""
    diff_ms = int((target - now).total_seconds() * 1000)
    return max(diff_ms, minimum_ms)


def idempotency_key(scheduled_trigger_id: str, scheduled_for: datetime) -> str:
    return f"sched_{scheduled_trigger_id}_{format_instant(scheduled_for)}"


def runner_id_for(scope: TriggerScope, scheduled_trigger_id: str) -> str:
    """Deterministic identity of the runner that owns a trigger."""
    return (
        f"scheduled-trigger_{scope.tenant_id}_{scope.project_id}"
        f"_{scope.agent_id}_{scheduled_trigger_id}"
    )
