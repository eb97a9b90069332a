"""Durable suspension for runners.

A runner waits in two places: until the next scheduled instant, and between
retry attempts.  Both waits go through :class:`DurableSuspend`, keyed by a
string that is deterministic for the occurrence (or attempt) being waited
for.  The sqlite implementation records each deadline the first time a key
is seen, so a runner restarted mid-wait resumes against the original
deadline instead of starting the wait over.

Runner loop state that must outlive the process (the cron anchor and the
occurrence currently being waited for) lives in a :class:`CheckpointStore`.
Everything else is rebuilt from the invocation rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from pykocron import db as dbops
from pykocron.db import DbConnection
from pykocron.scheduling import Clock, SystemClock, parse_instant
from pykocron.stores import persistence_errors

log = logging.getLogger(__name__)


class DurableSuspend(Protocol):
    async def suspend(self, key: str, milliseconds: int) -> None:
        """Return at or after the deadline first recorded for *key*."""
        ...


class AsyncioSuspend:
    """In-process waits for work that need not survive a restart (manual runs)."""

    async def suspend(self, key: str, milliseconds: int) -> None:
        await asyncio.sleep(milliseconds / 1000)


@dataclass
class RunnerState:
    last_scheduled_for: datetime | None = None
    next_scheduled_for: datetime | None = None


class CheckpointStore(Protocol):
    def load(self) -> RunnerState: ...

    def record_target(
        self, last_scheduled_for: datetime | None, target: datetime
    ) -> None: ...

    def complete_cycle(self, scheduled_for: datetime) -> None: ...

    def clear(self) -> None: ...


class SqliteDurableSuspend:
    def __init__(
        self,
        db: DbConnection,
        runner_id: str,
        *,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._runner_id = runner_id
        self._clock = clock or SystemClock()
        self._sleep = sleep

    async def suspend(self, key: str, milliseconds: int) -> None:
        now = self._clock.now()
        with persistence_errors("read durable timer"):
            recorded = dbops.get_timer_wake_at(self._db, self._runner_id, key)

        if recorded is None:
            wake_at = now + timedelta(milliseconds=milliseconds)
            with persistence_errors("record durable timer"):
                dbops.insert_timer(self._db, self._runner_id, key, wake_at)
        else:
            wake_at = parse_instant(recorded)
            log.info(
                "Runner %s resuming timer %s (deadline %s)",
                self._runner_id,
                key,
                recorded,
            )

        remaining = (wake_at - now).total_seconds()
        if remaining > 0:
            await self._sleep(remaining)

    def clear(self) -> None:
        with persistence_errors("clear durable timers"):
            dbops.delete_timers(self._db, self._runner_id)


class SqliteCheckpointStore:
    def __init__(self, db: DbConnection, runner_id: str) -> None:
        self._db = db
        self._runner_id = runner_id

    def load(self) -> RunnerState:
        with persistence_errors("load runner checkpoint"):
            row = dbops.get_checkpoint(self._db, self._runner_id)
        if row is None:
            return RunnerState()
        return RunnerState(
            last_scheduled_for=_optional_instant(row["last_scheduled_for"]),
            next_scheduled_for=_optional_instant(row["next_scheduled_for"]),
        )

    def record_target(
        self, last_scheduled_for: datetime | None, target: datetime
    ) -> None:
        with persistence_errors("save runner checkpoint"):
            dbops.save_checkpoint(
                self._db,
                self._runner_id,
                last_scheduled_for=last_scheduled_for,
                next_scheduled_for=target,
            )

    def complete_cycle(self, scheduled_for: datetime) -> None:
        # Timers are keyed per occurrence, so a finished cycle's are dead.
        with persistence_errors("save runner checkpoint"):
            dbops.save_checkpoint(
                self._db,
                self._runner_id,
                last_scheduled_for=scheduled_for,
                next_scheduled_for=None,
            )
            dbops.delete_timers(self._db, self._runner_id)

    def clear(self) -> None:
        with persistence_errors("clear runner checkpoint"):
            dbops.delete_checkpoint(self._db, self._runner_id)
            dbops.delete_timers(self._db, self._runner_id)


class MemoryCheckpointStore:
    """Checkpoints that live only as long as the runner object."""

    def __init__(self) -> None:
        self.state = RunnerState()

    def load(self) -> RunnerState:
        return RunnerState(
            self.state.last_scheduled_for, self.state.next_scheduled_for
        )

    def record_target(
        self, last_scheduled_for: datetime | None, target: datetime
    ) -> None:
        self.state = RunnerState(last_scheduled_for, target)

    def complete_cycle(self, scheduled_for: datetime) -> None:
        self.state = RunnerState(scheduled_for, None)

    def clear(self) -> None:
        self.state = RunnerState()


def _optional_instant(value: str | None) -> datetime | None:
    return parse_instant(value) if value else None
