import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import SCOPE
from pykocron.db import (
    append_conversation_id,
    cancel_open_invocations,
    create_conversation,
    create_trigger,
    delete_checkpoint,
    delete_timers,
    delete_trigger,
    get_checkpoint,
    get_conversation,
    get_invocation,
    get_invocation_by_idempotency_key,
    get_timer_wake_at,
    get_trigger,
    increment_invocation_attempt,
    init_db,
    insert_invocation,
    insert_timer,
    list_invocations,
    list_triggers,
    mark_invocation_cancelled,
    mark_invocation_completed,
    mark_invocation_failed,
    mark_invocation_running,
    save_checkpoint,
    set_conversation_session,
    update_trigger,
)
from pykocron.models import TriggerScope

SCHEDULED = datetime(2025, 1, 1, 12, 5, tzinfo=timezone.utc)


def _insert(db: sqlite3.Connection, invocation_id: str = "inv1", **overrides):
    fields = dict(
        invocation_id=invocation_id,
        scope=SCOPE,
        trigger_id="trig1",
        scheduled_for=SCHEDULED,
        idempotency_key=f"key-{invocation_id}",
        resolved_payload={"city": "Oulu"},
    )
    fields.update(overrides)
    return insert_invocation(db, **fields)


def test_init_db_creates_tables(tmp_path: Path) -> None:
    db = init_db(tmp_path / "test.db")
    cursor = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = [row[0] for row in cursor.fetchall()]
    assert "scheduled_triggers" in tables
    assert "scheduled_trigger_invocations" in tables
    assert "conversations" in tables
    assert "durable_timers" in tables
    assert "runner_checkpoints" in tables


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    init_db(tmp_path / "test.db")
    init_db(tmp_path / "test.db")


def test_trigger_crud(db: sqlite3.Connection, make_trigger) -> None:
    trigger = make_trigger(
        name="weather",
        payload={"city": "Oulu"},
        message_template="Weather in {{city}}",
        max_retries=1,
    )
    assert trigger.id == "trig1"
    assert trigger.scope == SCOPE
    assert trigger.payload == {"city": "Oulu"}
    assert trigger.max_retries == 1
    assert trigger.retry_delay_seconds == 60
    assert trigger.enabled
    assert trigger.workflow_run_id is None

    update_trigger(db, SCOPE, "trig1", enabled=False, workflow_run_id="runner-x")
    updated = get_trigger(db, SCOPE, "trig1")
    assert updated is not None
    assert not updated.enabled
    assert updated.workflow_run_id == "runner-x"

    delete_trigger(db, SCOPE, "trig1")
    assert get_trigger(db, SCOPE, "trig1") is None


def test_run_at_round_trips_as_utc(db: sqlite3.Connection, make_trigger) -> None:
    trigger = make_trigger(run_at=SCHEDULED)
    assert trigger.run_at == SCHEDULED
    assert trigger.is_one_time


def test_null_policy_columns_fall_back_to_defaults(db: sqlite3.Connection, make_trigger) -> None:
    make_trigger()
    db.execute(
        "UPDATE scheduled_triggers SET max_retries = NULL, cron_timezone = NULL"
    )
    trigger = get_trigger(db, SCOPE, "trig1")
    assert trigger is not None
    assert trigger.max_retries == 3
    assert trigger.cron_timezone == "UTC"


def test_triggers_are_scoped(db: sqlite3.Connection, make_trigger) -> None:
    make_trigger()
    other = TriggerScope(tenant_id="t2", project_id="p1", agent_id="a1")
    assert get_trigger(db, other, "trig1") is None
    assert list_triggers(db, other) == []
    assert [t.id for t in list_triggers(db)] == ["trig1"]


def test_list_triggers_enabled_only(db: sqlite3.Connection, make_trigger) -> None:
    make_trigger("on")
    make_trigger("off", enabled=False)
    assert [t.id for t in list_triggers(db, enabled_only=True)] == ["on"]


def test_update_trigger_bumps_updated_at(db: sqlite3.Connection, make_trigger) -> None:
    make_trigger()
    db.execute("UPDATE scheduled_triggers SET updated_at = 'old'")
    update_trigger(db, SCOPE, "trig1", name="renamed")
    trigger = get_trigger(db, SCOPE, "trig1")
    assert trigger is not None
    assert trigger.updated_at != "old"


def test_insert_invocation_defaults(db: sqlite3.Connection) -> None:
    invocation = _insert(db)
    assert invocation.status == "pending"
    assert invocation.attempt_number == 1
    assert invocation.scheduled_for == SCHEDULED
    assert invocation.resolved_payload == {"city": "Oulu"}
    assert invocation.conversation_ids == []
    assert invocation.started_at is None


def test_insert_invocation_duplicate_key_raises(db: sqlite3.Connection) -> None:
    _insert(db, "inv1", idempotency_key="same")
    with pytest.raises(sqlite3.IntegrityError):
        _insert(db, "inv2", idempotency_key="same")
    assert get_invocation(db, SCOPE, "trig1", "inv2") is None


def test_same_key_allowed_for_another_scope(db: sqlite3.Connection) -> None:
    other = TriggerScope(tenant_id="t2", project_id="p1", agent_id="a1")
    _insert(db, "inv1", idempotency_key="same")
    _insert(db, "inv2", idempotency_key="same", scope=other)
    _insert(db, "inv3", idempotency_key="same", trigger_id="trig2")

    found = get_invocation_by_idempotency_key(db, other, "trig1", "same")
    assert found is not None
    assert found.id == "inv2"
    assert get_invocation_by_idempotency_key(db, SCOPE, "trig2", "same").id == "inv3"
    assert get_invocation_by_idempotency_key(db, other, "trig2", "same") is None


def test_rows_missing_after_insert_raise(db: sqlite3.Connection) -> None:
    with patch("pykocron.db.get_trigger", return_value=None):
        with pytest.raises(sqlite3.DatabaseError, match="missing after insert"):
            create_trigger(db, scope=SCOPE, trigger_id="trig1", cron_expression="* * * * *")
    with patch("pykocron.db.get_invocation", return_value=None):
        with pytest.raises(sqlite3.DatabaseError, match="missing after insert"):
            _insert(db)


def test_status_transitions(db: sqlite3.Connection) -> None:
    _insert(db)
    running = mark_invocation_running(db, SCOPE, "trig1", "inv1")
    assert running is not None
    assert running.status == "running"
    first_start = running.started_at
    assert first_start is not None

    retry = increment_invocation_attempt(db, SCOPE, "trig1", "inv1", 1)
    assert retry is not None
    assert retry.status == "pending"
    assert retry.attempt_number == 2

    db.execute(
        "UPDATE scheduled_trigger_invocations SET started_at = 'first' WHERE id = 'inv1'"
    )
    again = mark_invocation_running(db, SCOPE, "trig1", "inv1")
    assert again is not None
    assert again.started_at == "first"

    done = mark_invocation_completed(db, SCOPE, "trig1", "inv1", "conv-1")
    assert done is not None
    assert done.status == "completed"
    assert done.completed_at is not None
    assert done.conversation_ids == ["conv-1"]


def test_mark_failed_records_error(db: sqlite3.Connection) -> None:
    _insert(db)
    failed = mark_invocation_failed(
        db, SCOPE, "trig1", "inv1", "boom", "EXECUTION_ERROR"
    )
    assert failed is not None
    assert failed.status == "failed"
    assert failed.error_message == "boom"
    assert failed.error_code == "EXECUTION_ERROR"


def test_cancelled_is_not_overwritten(db: sqlite3.Connection) -> None:
    _insert(db)
    mark_invocation_cancelled(db, SCOPE, "trig1", "inv1")

    for update in (
        lambda: mark_invocation_running(db, SCOPE, "trig1", "inv1"),
        lambda: mark_invocation_completed(db, SCOPE, "trig1", "inv1"),
        lambda: mark_invocation_failed(db, SCOPE, "trig1", "inv1", "late"),
        lambda: increment_invocation_attempt(db, SCOPE, "trig1", "inv1", 1),
    ):
        invocation = update()
        assert invocation is not None
        assert invocation.status == "cancelled"
    assert invocation.error_message is None


def test_append_conversation_id_dedupes(db: sqlite3.Connection) -> None:
    _insert(db)
    append_conversation_id(db, SCOPE, "trig1", "inv1", "conv-1")
    append_conversation_id(db, SCOPE, "trig1", "inv1", "conv-2")
    append_conversation_id(db, SCOPE, "trig1", "inv1", "conv-1")
    invocation = get_invocation(db, SCOPE, "trig1", "inv1")
    assert invocation is not None
    assert invocation.conversation_ids == ["conv-1", "conv-2"]


def test_list_invocations_newest_first_and_filtered(db: sqlite3.Connection) -> None:
    _insert(db, "old", scheduled_for=datetime(2025, 1, 1, tzinfo=timezone.utc))
    _insert(db, "new", scheduled_for=datetime(2025, 1, 2, tzinfo=timezone.utc))
    mark_invocation_failed(db, SCOPE, "trig1", "old", "boom")

    assert [i.id for i in list_invocations(db, SCOPE, "trig1")] == ["new", "old"]
    assert [i.id for i in list_invocations(db, SCOPE, "trig1", status="failed")] == [
        "old"
    ]
    assert len(list_invocations(db, SCOPE, "trig1", limit=1)) == 1


def test_cancel_open_invocations(db: sqlite3.Connection) -> None:
    _insert(db, "pending")
    _insert(db, "running")
    _insert(db, "done")
    mark_invocation_running(db, SCOPE, "trig1", "running")
    mark_invocation_completed(db, SCOPE, "trig1", "done")

    assert cancel_open_invocations(db, SCOPE, "trig1") == 2
    statuses = {i.id: i.status for i in list_invocations(db, SCOPE, "trig1")}
    assert statuses == {"pending": "cancelled", "running": "cancelled", "done": "completed"}


def test_conversation_crud(db: sqlite3.Connection) -> None:
    create_conversation(
        db, conversation_id="conv-1", trigger_id="trig1", invocation_id="inv1", cwd="/tmp/c"
    )
    set_conversation_session(db, "conv-1", "sess-1")
    conv = get_conversation(db, "conv-1")
    assert conv is not None
    assert conv.invocation_id == "inv1"
    assert conv.session_id == "sess-1"
    assert conv.cwd == "/tmp/c"


def test_timers_keep_first_deadline(db: sqlite3.Connection) -> None:
    first = datetime(2025, 1, 1, 12, 5, tzinfo=timezone.utc)
    insert_timer(db, "runner", "wait:a", first)
    insert_timer(db, "runner", "wait:a", datetime(2030, 1, 1, tzinfo=timezone.utc))
    assert get_timer_wake_at(db, "runner", "wait:a") == "2025-01-01T12:05:00.000Z"

    delete_timers(db, "runner")
    assert get_timer_wake_at(db, "runner", "wait:a") is None


def test_checkpoint_upsert(db: sqlite3.Connection) -> None:
    save_checkpoint(db, "runner", last_scheduled_for=None, next_scheduled_for=SCHEDULED)
    save_checkpoint(db, "runner", last_scheduled_for=SCHEDULED, next_scheduled_for=None)
    row = get_checkpoint(db, "runner")
    assert row is not None
    assert row["last_scheduled_for"] == "2025-01-01T12:05:00.000Z"
    assert row["next_scheduled_for"] is None

    delete_checkpoint(db, "runner")
    assert get_checkpoint(db, "runner") is None
