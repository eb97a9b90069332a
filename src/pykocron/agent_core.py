"""Claude agent session for one scheduled invocation attempt."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)

from pykocron.db import DbConnection, set_conversation_session
from pykocron.errors import ExecutionError

# Suppress the chatty "Using bundled Claude Code CLI: ..." INFO line that
# fires on every subprocess spawn.
import logging as _logging

_logging.getLogger("claude_agent_sdk._internal.transport.subprocess_cli").setLevel(
    _logging.WARNING
)


@dataclass
class AgentMessage:
    """A simplified message yielded by :func:`query_agent`."""

    type: Literal["text", "result"]
    text: str | None = None
    session_id: str | None = None


_DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
]


def conversation_dir(data_dir: Path, conversation_id: str) -> Path:
    return data_dir / "conversations" / conversation_id


async def query_agent(
    prompt: str,
    *,
    db: DbConnection,
    data_dir: Path,
    conversation_id: str,
    system_prompt: str | None = None,
    model: str | None = None,
    cli_path: Path | None = None,
) -> AsyncGenerator[AgentMessage, None]:
    """Run *prompt* in a fresh agent session and yield its messages.

    Each call starts a new session: scheduled runs never resume an earlier
    conversation.  A result flagged as an error raises
    :class:`~pykocron.errors.ExecutionError`.
    """
    conv_dir = conversation_dir(data_dir, conversation_id)
    conv_dir.mkdir(parents=True, exist_ok=True)

    options = ClaudeAgentOptions(
        cwd=str(conv_dir),
        permission_mode="bypassPermissions",
        model=model,
        allowed_tools=list(_DEFAULT_ALLOWED_TOOLS),
        setting_sources=["project", "user"],
        system_prompt=system_prompt,
        cli_path=cli_path,
        env={"SHELL": "/bin/bash"},
    )

    async with ClaudeSDKClient(options) as client:
        await client.query(prompt)

        had_text = False
        async for message in client.receive_response():
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock) and block.text:
                        had_text = True
                        yield AgentMessage(type="text", text=block.text)

            elif isinstance(message, ResultMessage):
                set_conversation_session(db, conversation_id, message.session_id)
                if message.is_error:
                    raise ExecutionError(
                        message.result or f"Agent run ended with {message.subtype}",
                        conversation_id=conversation_id,
                    )
                # Fall back to the result text when nothing was streamed
                if not had_text and message.result:
                    yield AgentMessage(type="text", text=message.result)
                yield AgentMessage(
                    type="result", text=message.result, session_id=message.session_id
                )
