"""Exception hierarchy.

Routine stop conditions (trigger deleted, disabled or superseded, occurrence
already executed) are not exceptions; the runner reports them through
:class:`~pykocron.models.RunnerOutcome`.
"""

from __future__ import annotations

EXECUTION_ERROR = "EXECUTION_ERROR"


class PykocronError(Exception):
    """Base class for all pykocron errors."""


class ConfigurationError(PykocronError):
    """A trigger's schedule cannot be evaluated (setup bug, not transient)."""


class ExecutionError(PykocronError):
    """The agent run for one attempt failed.

    ``conversation_id`` is set when the attempt got far enough to open a
    conversation, so the runner can still record it on the invocation.
    """

    error_code = EXECUTION_ERROR

    def __init__(self, message: str, *, conversation_id: str | None = None) -> None:
        super().__init__(message)
        self.conversation_id = conversation_id


class ExecutionTimeoutError(ExecutionError):
    def __init__(self, timeout_seconds: int, *, conversation_id: str | None = None) -> None:
        super().__init__(
            f"Execution timed out after {timeout_seconds}s",
            conversation_id=conversation_id,
        )
        self.timeout_seconds = timeout_seconds


class PersistenceError(PykocronError):
    """A read or write against the trigger or invocation tables failed."""


class TriggerNotFoundError(PykocronError):
    pass


class InvocationNotFoundError(PykocronError):
    pass


class InvalidInvocationStateError(PykocronError):
    """An operator action is not allowed in the invocation's current status."""
