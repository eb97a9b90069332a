import asyncio
import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import SCOPE, START
from pykocron.db import get_conversation, insert_invocation
from pykocron.errors import ExecutionError, ExecutionTimeoutError
from pykocron.gateway import (
    AgentExecutionGateway,
    build_user_message,
    interpolate_template,
    run_with_timeout,
)


@dataclass
class _FakeMsg:
    type: str = "text"
    text: str = ""


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def invocation(db: sqlite3.Connection):
    return insert_invocation(
        db,
        invocation_id="inv1",
        scope=SCOPE,
        trigger_id="trig1",
        scheduled_for=START,
        idempotency_key="k",
        resolved_payload={"city": "Oulu", "days": 3, "tags": ["a", "b"]},
    )


def test_interpolate_template_dotted_paths() -> None:
    payload = {"user": {"name": "Ada", "langs": ["py", "ml"]}, "n": 0}
    assert interpolate_template("Hi {{user.name}}", payload) == "Hi Ada"
    assert interpolate_template("{{ user.langs.1 }}", payload) == "ml"
    assert interpolate_template("n={{n}}", payload) == "n=0"


def test_interpolate_template_missing_and_structured_values() -> None:
    payload = {"user": {"name": "Ada"}}
    assert interpolate_template("[{{missing.path}}]", payload) == "[]"
    assert interpolate_template("{{user}}", payload) == '{"name": "Ada"}'
    assert interpolate_template("{{x}}", None) == ""


def test_build_user_message_without_template_is_json() -> None:
    assert json.loads(build_user_message(None, {"a": 1})) == {"a": 1}
    assert build_user_message(None, None) == "{}"
    assert build_user_message("Go {{a}}", {"a": 1}) == "Go 1"


def test_run_with_timeout_raises_execution_timeout() -> None:
    with pytest.raises(ExecutionTimeoutError) as excinfo:
        asyncio.run(
            run_with_timeout(asyncio.sleep(5), 0.01, conversation_id="conv-1")
        )
    assert excinfo.value.conversation_id == "conv-1"
    assert excinfo.value.error_code == "EXECUTION_ERROR"
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_run_with_timeout_returns_result() -> None:
    async def work() -> str:
        return "done"

    assert await run_with_timeout(work(), 5) == "done"


def test_execute_opens_conversation_and_sends_prompt(
    db: sqlite3.Connection, data_dir: Path, make_trigger, invocation
) -> None:
    trigger = make_trigger(message_template="Weather for {{city}}, {{days}} days")
    prompts: list[str] = []

    async def fake_agent(prompt, **kwargs):
        prompts.append(prompt)
        yield _FakeMsg(type="text", text="Sunny")

    gateway = AgentExecutionGateway(db, data_dir)
    with patch("pykocron.gateway.query_agent", fake_agent):
        result = asyncio.run(gateway.execute(SCOPE, trigger, invocation))

    assert result.success
    assert prompts == ["Weather for Oulu, 3 days"]
    conversation = get_conversation(db, result.conversation_id)
    assert conversation is not None
    assert conversation.invocation_id == "inv1"
    assert conversation.scheduled_trigger_id == "trig1"
    assert conversation.cwd == str(data_dir / "conversations" / result.conversation_id)


def test_each_execute_uses_new_conversation(
    db: sqlite3.Connection, data_dir: Path, make_trigger, invocation
) -> None:
    trigger = make_trigger()

    async def fake_agent(prompt, **kwargs):
        yield _FakeMsg(type="text", text="ok")

    gateway = AgentExecutionGateway(db, data_dir)
    with patch("pykocron.gateway.query_agent", fake_agent):
        first = asyncio.run(gateway.execute(SCOPE, trigger, invocation))
        second = asyncio.run(gateway.execute(SCOPE, trigger, invocation))

    assert first.conversation_id != second.conversation_id


def test_agent_failure_becomes_execution_error(
    db: sqlite3.Connection, data_dir: Path, make_trigger, invocation
) -> None:
    trigger = make_trigger()

    async def failing_agent(prompt, **kwargs):
        raise RuntimeError("CLI exited with code 1")
        yield  # pragma: no cover

    gateway = AgentExecutionGateway(db, data_dir)
    with patch("pykocron.gateway.query_agent", failing_agent):
        with pytest.raises(ExecutionError, match="CLI exited") as excinfo:
            asyncio.run(gateway.execute(SCOPE, trigger, invocation))

    assert excinfo.value.conversation_id is not None
    assert get_conversation(db, excinfo.value.conversation_id) is not None


def test_slow_agent_times_out(
    db: sqlite3.Connection, data_dir: Path, make_trigger, invocation
) -> None:
    trigger = make_trigger().model_copy(update={"timeout_seconds": 0.05})

    async def slow_agent(prompt, **kwargs):
        await asyncio.sleep(5)
        yield _FakeMsg(type="text", text="too late")

    gateway = AgentExecutionGateway(db, data_dir)
    with patch("pykocron.gateway.query_agent", slow_agent):
        with pytest.raises(ExecutionTimeoutError) as excinfo:
            asyncio.run(gateway.execute(SCOPE, trigger, invocation))

    assert excinfo.value.conversation_id is not None
