"""The per-trigger control loop.

One :class:`TriggerRunner` drives one trigger through
check ownership -> compute next instant -> durable sleep -> re-check
ownership -> materialize invocation -> execute with retries, repeating for
cron triggers and stopping after one cycle for one-time triggers.

Ownership is advisory.  The runner compares ``workflow_run_id`` with its own
identity before sleeping and again after waking, and nowhere else.  Two
runners can both pass the check before either sees the other's write; the
idempotency key keeps them from creating two invocations for the same
occurrence, but both may execute it.

External cancellation stops an invocation only before its first attempt.
Later on the row stays ``cancelled``, since the stores never move it out of
that status, but remaining attempts still run.

A runner restarted from its checkpoint re-runs an attempt that was still
``running`` when the previous process died, so execution is at least once.
"""

from __future__ import annotations

import logging

from pykocron.errors import EXECUTION_ERROR, PersistenceError
from pykocron.gateway import ExecutionGateway
from pykocron.models import (
    RunnerOutcome,
    ScheduledTrigger,
    ScheduledTriggerInvocation,
    TriggerScope,
)
from pykocron.retry import max_attempts, next_attempt_state
from pykocron.scheduling import (
    MIN_SLEEP_MS,
    Clock,
    SystemClock,
    compute_next_execution,
    compute_sleep_ms,
    format_instant,
    idempotency_key,
    runner_id_for,
)
from pykocron.stores import InvocationStore, TriggerConfigStore
from pykocron.suspend import CheckpointStore, DurableSuspend, MemoryCheckpointStore

log = logging.getLogger(__name__)


class TriggerRunner:
    def __init__(
        self,
        scope: TriggerScope,
        trigger_id: str,
        *,
        triggers: TriggerConfigStore,
        invocations: InvocationStore,
        gateway: ExecutionGateway,
        suspend: DurableSuspend,
        clock: Clock | None = None,
        checkpoints: CheckpointStore | None = None,
        min_sleep_ms: int = MIN_SLEEP_MS,
    ) -> None:
        self.scope = scope
        self.trigger_id = trigger_id
        self.runner_id = runner_id_for(scope, trigger_id)
        self._triggers = triggers
        self._invocations = invocations
        self._gateway = gateway
        self._suspend = suspend
        self._clock = clock or SystemClock()
        self._checkpoints = checkpoints or MemoryCheckpointStore()
        self._min_sleep_ms = min_sleep_ms

    def check_ownership(self) -> ScheduledTrigger | RunnerOutcome:
        """Fetch the trigger and decide whether this runner may continue.

        Returns the trigger when it may, or the ``stopped`` outcome when it
        must stop.  Stopping drops the runner's checkpoint and timers, so a
        later runner for the same trigger starts from the current time.
        """
        trigger = self._triggers.get(self.scope, self.trigger_id)
        if trigger is None:
            reason = "deleted"
        elif not trigger.enabled:
            reason = "disabled"
        elif trigger.workflow_run_id and trigger.workflow_run_id != self.runner_id:
            reason = "superseded"
        else:
            return trigger

        log.info("Scheduled trigger %s runner stopping: %s", self.trigger_id, reason)
        self._checkpoints.clear()
        return RunnerOutcome(status="stopped", reason=reason)

    async def run(self) -> RunnerOutcome:
        state = self._checkpoints.load()
        last_scheduled_for = state.last_scheduled_for
        resume_target = state.next_scheduled_for
        if resume_target is not None:
            log.info(
                "Runner %s resuming occurrence %s",
                self.runner_id,
                format_instant(resume_target),
            )

        while True:
            owned = self.check_ownership()
            if isinstance(owned, RunnerOutcome):
                return owned
            trigger = owned

            resuming = resume_target is not None
            if resume_target is not None:
                scheduled_for, is_one_time = resume_target, trigger.is_one_time
                resume_target = None
            else:
                scheduled_for, is_one_time = compute_next_execution(
                    trigger, last_scheduled_for, self._clock.now()
                )
                self._checkpoints.record_target(last_scheduled_for, scheduled_for)

            # Computed as late as possible so store round trips don't add drift
            sleep_ms = compute_sleep_ms(
                scheduled_for, self._clock.now(), self._min_sleep_ms
            )
            log.debug(
                "Trigger %s sleeping %d ms until %s",
                self.trigger_id,
                sleep_ms,
                format_instant(scheduled_for),
            )
            await self._suspend.suspend(f"wait:{format_instant(scheduled_for)}", sleep_ms)

            owned = self.check_ownership()
            if isinstance(owned, RunnerOutcome):
                return owned
            trigger = owned

            created = self._invocations.create_if_absent(
                self.scope,
                self.trigger_id,
                idempotency_key=idempotency_key(self.trigger_id, scheduled_for),
                scheduled_for=scheduled_for,
                resolved_payload=trigger.payload,
            )
            last_scheduled_for = scheduled_for
            invocation = created.invocation

            # A resumed cycle also picks up the attempt its crash interrupted
            open_statuses = ("pending", "running") if resuming else ("pending",)
            skip = created.already_existed and invocation.status not in open_statuses
            if not skip:
                # Last point where an out-of-band cancellation is honoured
                current = self._invocations.get_by_id(
                    self.scope, self.trigger_id, invocation.id
                )
                skip = current is None or current.status == "cancelled"
                invocation = current or invocation

            if skip:
                log.info(
                    "Invocation %s for %s already %s, skipping execution",
                    invocation.id,
                    format_instant(scheduled_for),
                    invocation.status,
                )
                self._checkpoints.complete_cycle(scheduled_for)
                if is_one_time:
                    return RunnerOutcome(
                        status="already_executed", invocation_id=invocation.id
                    )
                continue

            last_error = await self.execute_with_retries(trigger, invocation)
            self._checkpoints.complete_cycle(scheduled_for)

            if is_one_time:
                return RunnerOutcome(
                    status="failed" if last_error else "completed",
                    invocation_id=invocation.id,
                )

    async def execute_with_retries(
        self, trigger: ScheduledTrigger, invocation: ScheduledTriggerInvocation
    ) -> str | None:
        """Drive *invocation* to ``completed`` or ``failed``.

        Starts from the invocation's stored ``attempt_number`` so a restarted
        runner continues the retry budget instead of resetting it.  Returns
        the final error message, or ``None`` on success.
        """
        scope = trigger.scope
        attempt = invocation.attempt_number
        limit = max_attempts(trigger.max_retries)
        last_error: str | None = None

        if attempt > limit:
            last_error = f"Retry budget exhausted before attempt {attempt} of {limit}"
        elif attempt > 1:
            await self._wait_before_retry(trigger, invocation.id, attempt - 1)

        while attempt <= limit:
            self._invocations.mark_running(scope, trigger.id, invocation.id)
            current = invocation.model_copy(
                update={"attempt_number": attempt, "status": "running"}
            )

            conversation_id: str | None = None
            error: BaseException | str | None = None
            try:
                result = await self._gateway.execute(scope, trigger, current)
            except PersistenceError:
                raise
            except Exception as e:
                error = e
                conversation_id = getattr(e, "conversation_id", None)
            else:
                conversation_id = result.conversation_id
                if not result.success:
                    error = "Execution failed"

            if conversation_id is not None:
                self._invocations.append_conversation_id(
                    scope, trigger.id, invocation.id, conversation_id
                )

            decision = next_attempt_state(
                attempt,
                max_retries=trigger.max_retries,
                retry_delay_seconds=trigger.retry_delay_seconds,
                error=error,
            )

            if decision.action == "complete":
                self._invocations.mark_completed(
                    scope, trigger.id, invocation.id, conversation_id
                )
                log.info(
                    "Invocation %s completed on attempt %d", invocation.id, attempt
                )
                return None

            last_error = decision.error_message
            log.warning(
                "Invocation %s attempt %d/%d failed: %s",
                invocation.id,
                attempt,
                limit,
                last_error,
            )
            if decision.action == "fail":
                break

            self._invocations.increment_attempt(scope, trigger.id, invocation.id, attempt)
            await self._wait_before_retry(trigger, invocation.id, attempt)
            attempt = decision.attempt_number

        self._invocations.mark_failed(
            scope, trigger.id, invocation.id, last_error or "Execution failed", EXECUTION_ERROR
        )
        log.info("Invocation %s failed after %d attempt(s)", invocation.id, attempt)
        return last_error

    async def _wait_before_retry(
        self, trigger: ScheduledTrigger, invocation_id: str, failed_attempt: int
    ) -> None:
        # Keyed by the failed attempt, so a restart mid-wait resumes this timer
        await self._suspend.suspend(
            f"retry:{invocation_id}:{failed_attempt}",
            trigger.retry_delay_seconds * 1000,
        )


def describe(outcome: RunnerOutcome) -> str:
    if outcome.reason:
        return f"{outcome.status} ({outcome.reason})"
    if outcome.invocation_id:
        return f"{outcome.status} (invocation {outcome.invocation_id})"
    return outcome.status
