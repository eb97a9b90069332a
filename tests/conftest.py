import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pykocron.db import create_trigger, init_db
from pykocron.models import (
    ExecutionResult,
    ScheduledTrigger,
    ScheduledTriggerInvocation,
    TriggerScope,
)

SCOPE = TriggerScope(tenant_id="t1", project_id="p1", agent_id="a1")
START = datetime(2025, 1, 1, 12, 1, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, milliseconds: float) -> None:
        self.current += timedelta(milliseconds=milliseconds)


class InstantSuspend:
    """Moves the fake clock forward instead of sleeping."""

    def __init__(
        self,
        clock: FakeClock,
        on_suspend: Callable[[str, int], None] | None = None,
    ) -> None:
        self.clock = clock
        self.on_suspend = on_suspend
        self.calls: list[tuple[str, int]] = []

    async def suspend(self, key: str, milliseconds: int) -> None:
        self.calls.append((key, milliseconds))
        self.clock.advance(milliseconds)
        if self.on_suspend is not None:
            self.on_suspend(key, milliseconds)


Outcome = Exception | ExecutionResult | None


class ScriptedGateway:
    """Plays back *outcomes* in order; ``None`` (or running out) succeeds."""

    def __init__(
        self,
        outcomes: list[Outcome] | None = None,
        on_execute: Callable[[ScheduledTriggerInvocation], None] | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.on_execute = on_execute
        self.calls: list[ScheduledTriggerInvocation] = []

    async def execute(
        self,
        scope: TriggerScope,
        trigger: ScheduledTrigger,
        invocation: ScheduledTriggerInvocation,
    ) -> ExecutionResult:
        self.calls.append(invocation)
        if self.on_execute is not None:
            self.on_execute(invocation)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or ExecutionResult(conversation_id=f"conv-{uuid.uuid4().hex[:8]}")


@pytest.fixture
def db(tmp_path: Path) -> sqlite3.Connection:
    return init_db(tmp_path / "test.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_trigger(db: sqlite3.Connection) -> Callable[..., ScheduledTrigger]:
    def _make(trigger_id: str = "trig1", **fields) -> ScheduledTrigger:
        if "cron_expression" not in fields and "run_at" not in fields:
            fields["cron_expression"] = "*/5 * * * *"
        return create_trigger(db, scope=SCOPE, trigger_id=trigger_id, **fields)

    return _make
