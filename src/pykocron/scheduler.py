import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from pykocron.config import settings
from pykocron.db import DbConnection, get_trigger, list_triggers, update_trigger
from pykocron.errors import ConfigurationError, PersistenceError
from pykocron.gateway import AgentExecutionGateway, ExecutionGateway
from pykocron.models import RunnerOutcome, ScheduledTrigger
from pykocron.runner import TriggerRunner, describe
from pykocron.scheduling import Clock, SystemClock, runner_id_for
from pykocron.stores import SqliteInvocationStore, SqliteTriggerConfigStore
from pykocron.suspend import SqliteCheckpointStore, SqliteDurableSuspend

log = logging.getLogger(__name__)


class TriggerScheduler:
    """Keeps one runner task alive per enabled trigger.

    Each :meth:`reconcile` pass claims unowned enabled triggers and starts a
    runner for any that has none.  A runner that finished (one-time trigger
    done, or stopped on disable) is only started again once the trigger row
    changes.  A runner that crashed on a persistence error is restarted
    after ``restart_delay`` seconds and resumes from its checkpoint.
    """

    def __init__(
        self,
        db: DbConnection,
        gateway: ExecutionGateway,
        *,
        reconcile_interval: float = 60,
        restart_delay: float = 30,
        min_sleep_ms: int = 1000,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._reconcile_interval = reconcile_interval
        self._restart_delay = restart_delay
        self._min_sleep_ms = min_sleep_ms
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self.tasks: dict[str, asyncio.Task[RunnerOutcome | None]] = {}
        # runner id -> trigger row as it was when its runner finished
        self._finished: dict[str, ScheduledTrigger] = {}

    def build_runner(self, trigger: ScheduledTrigger) -> TriggerRunner:
        runner_id = runner_id_for(trigger.scope, trigger.id)
        return TriggerRunner(
            trigger.scope,
            trigger.id,
            triggers=SqliteTriggerConfigStore(self._db),
            invocations=SqliteInvocationStore(self._db),
            gateway=self._gateway,
            suspend=SqliteDurableSuspend(
                self._db, runner_id, clock=self._clock, sleep=self._sleep
            ),
            clock=self._clock,
            checkpoints=SqliteCheckpointStore(self._db, runner_id),
            min_sleep_ms=self._min_sleep_ms,
        )

    def reconcile(self) -> list[str]:
        """Start runners for enabled triggers that need one.

        Returns the ids of the runners started.
        """
        started = []
        for trigger in list_triggers(self._db, enabled_only=True):
            runner_id = runner_id_for(trigger.scope, trigger.id)

            task = self.tasks.get(runner_id)
            if task is not None:
                if not task.done():
                    continue
                if not task.cancelled() and task.exception() is not None:
                    log.error(
                        "Runner %s died: %r", runner_id, task.exception()
                    )
                del self.tasks[runner_id]

            if self._finished.get(runner_id) == trigger:
                continue

            if trigger.workflow_run_id and trigger.workflow_run_id != runner_id:
                log.debug(
                    "Trigger %s owned by %s, not starting",
                    trigger.id,
                    trigger.workflow_run_id,
                )
                continue
            if trigger.workflow_run_id is None:
                update_trigger(
                    self._db, trigger.scope, trigger.id, workflow_run_id=runner_id
                )

            self.tasks[runner_id] = asyncio.create_task(
                self._supervise(trigger), name=runner_id
            )
            started.append(runner_id)
            log.info("Started runner %s", runner_id)
        return started

    async def _supervise(self, trigger: ScheduledTrigger) -> RunnerOutcome | None:
        runner_id = runner_id_for(trigger.scope, trigger.id)
        outcome: RunnerOutcome | None = None
        while True:
            runner = self.build_runner(trigger)
            try:
                outcome = await runner.run()
            except ConfigurationError:
                log.exception("Runner %s has an invalid schedule, not restarting", runner_id)
                break
            except PersistenceError:
                log.exception(
                    "Runner %s lost its store, restarting in %ss",
                    runner_id,
                    self._restart_delay,
                )
                await self._sleep(self._restart_delay)
                continue
            log.info("Runner %s finished: %s", runner_id, describe(outcome))
            break

        current = get_trigger(self._db, trigger.scope, trigger.id)
        if current is not None:
            self._finished[runner_id] = current
        return outcome

    async def shutdown(self) -> None:
        for task in self.tasks.values():
            task.cancel()
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()

    async def run_forever(self) -> None:
        try:
            while True:
                self.reconcile()
                await self._sleep(self._reconcile_interval)
        finally:
            await self.shutdown()


async def run_scheduler(db: DbConnection, data_dir: Path) -> None:
    db.execute("PRAGMA journal_mode=WAL")
    gateway = AgentExecutionGateway(
        db, data_dir, model=settings.model, cli_path=settings.cli_path
    )
    scheduler = TriggerScheduler(
        db,
        gateway,
        reconcile_interval=settings.reconcile_interval,
        restart_delay=settings.runner_restart_delay,
        min_sleep_ms=settings.min_sleep_ms,
    )
    log.info("Scheduler started")
    await scheduler.run_forever()
