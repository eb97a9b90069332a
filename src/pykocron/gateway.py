"""Execution gateway: runs the agent once for one invocation attempt.

The gateway is a thin collaborator of the runner.  It must enforce the
trigger's timeout and must not retry; retry policy belongs to the runner.
Every call opens a new conversation, including retries of the same
invocation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Protocol

from pykocron.agent_core import conversation_dir, query_agent
from pykocron.db import DbConnection, create_conversation
from pykocron.errors import ExecutionError, ExecutionTimeoutError, PersistenceError
from pykocron.models import (
    ExecutionResult,
    ScheduledTrigger,
    ScheduledTriggerInvocation,
    TriggerScope,
)
from pykocron.stores import persistence_errors

log = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


class ExecutionGateway(Protocol):
    async def execute(
        self,
        scope: TriggerScope,
        trigger: ScheduledTrigger,
        invocation: ScheduledTriggerInvocation,
    ) -> ExecutionResult: ...


def _lookup(payload: dict[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value


def interpolate_template(template: str, payload: dict[str, Any] | None) -> str:
    """Replace ``{{dotted.path}}`` placeholders with values from *payload*.

    Missing values render as an empty string; objects and lists render as
    JSON.
    """
    payload = payload or {}

    def _render(match: re.Match[str]) -> str:
        value = _lookup(payload, match.group(1))
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _PLACEHOLDER_RE.sub(_render, template)


def build_user_message(
    message_template: str | None, payload: dict[str, Any] | None
) -> str:
    if message_template:
        return interpolate_template(message_template, payload)
    return json.dumps(payload if payload is not None else {})


async def run_with_timeout(
    coro: Any, timeout_seconds: int, *, conversation_id: str | None = None
) -> Any:
    """Await *coro*, converting an overrun into :class:`ExecutionTimeoutError`."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise ExecutionTimeoutError(
            timeout_seconds, conversation_id=conversation_id
        ) from e


class AgentExecutionGateway:
    """Runs the trigger's agent through the Claude agent SDK."""

    def __init__(
        self,
        db: DbConnection,
        data_dir: Path,
        *,
        model: str | None = None,
        cli_path: Path | None = None,
    ) -> None:
        self._db = db
        self._data_dir = data_dir
        self._model = model
        self._cli_path = cli_path

    async def execute(
        self,
        scope: TriggerScope,
        trigger: ScheduledTrigger,
        invocation: ScheduledTriggerInvocation,
    ) -> ExecutionResult:
        conversation_id = uuid.uuid4().hex
        with persistence_errors("create conversation"):
            create_conversation(
                self._db,
                conversation_id=conversation_id,
                trigger_id=trigger.id,
                invocation_id=invocation.id,
                cwd=str(conversation_dir(self._data_dir, conversation_id)),
            )
        prompt = build_user_message(trigger.message_template, invocation.resolved_payload)

        log.info(
            "Executing trigger %s invocation %s (attempt %d, conversation %s)",
            trigger.id,
            invocation.id,
            invocation.attempt_number,
            conversation_id,
        )
        try:
            text = await run_with_timeout(
                self._collect(prompt, conversation_id),
                trigger.timeout_seconds,
                conversation_id=conversation_id,
            )
        except (ExecutionError, PersistenceError):
            raise
        except Exception as e:
            raise ExecutionError(str(e), conversation_id=conversation_id) from e

        log.debug("Trigger %s produced %d characters", trigger.id, len(text))
        return ExecutionResult(conversation_id=conversation_id)

    async def _collect(self, prompt: str, conversation_id: str) -> str:
        result_text = ""
        async for msg in query_agent(
            prompt,
            db=self._db,
            data_dir=self._data_dir,
            conversation_id=conversation_id,
            model=self._model,
            cli_path=self._cli_path,
        ):
            if msg.type == "text" and msg.text:
                result_text += msg.text
        return result_text
