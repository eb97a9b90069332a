"""Retry accounting for one invocation, as a pure transition function.

``attempt_number`` is 1-indexed.  A trigger with ``max_retries = n`` gets
``n + 1`` attempts; an invocation that succeeds on attempt ``k`` keeps
``attempt_number = k`` and one that runs out ends at ``n + 1``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

AttemptAction = Literal["complete", "retry", "fail"]


@dataclass(frozen=True)
class AttemptDecision:
    action: AttemptAction
    attempt_number: int
    delay_seconds: int = 0
    error_message: str | None = None


def max_attempts(max_retries: int) -> int:
    return max_retries + 1


def next_attempt_state(
    attempt_number: int,
    *,
    max_retries: int,
    retry_delay_seconds: int,
    error: BaseException | str | None,
) -> AttemptDecision:
    """Decide what happens to an invocation after attempt *attempt_number*.

    ``error=None`` means the attempt succeeded.  On ``"retry"`` the returned
    ``attempt_number`` is the one the invocation moves to, and
    ``delay_seconds`` is the wait before it runs.
    """
    if error is None:
        return AttemptDecision(action="complete", attempt_number=attempt_number)

    message = str(error) or type(error).__name__
    if attempt_number < max_attempts(max_retries):
        return AttemptDecision(
            action="retry",
            attempt_number=attempt_number + 1,
            delay_seconds=retry_delay_seconds,
            error_message=message,
        )
    return AttemptDecision(
        action="fail", attempt_number=attempt_number, error_message=message
    )
