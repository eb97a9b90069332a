from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from pykocron.models import (
    Conversation,
    InvocationStatus,
    ScheduledTrigger,
    ScheduledTriggerInvocation,
    TriggerScope,
)
from pykocron.scheduling import format_instant

DbConnection = sqlite3.Connection

ModelT = TypeVar("ModelT", bound=BaseModel)

_SCOPE_SQL = "tenant_id = ? AND project_id = ? AND agent_id = ?"

# Columns left NULL fall back to the model defaults
_TRIGGER_DEFAULTED = ("cron_timezone", "max_retries", "retry_delay_seconds", "timeout_seconds")


def _now() -> str:
    return format_instant(datetime.now(timezone.utc))


def _scope_params(scope: TriggerScope) -> tuple[str, str, str]:
    return (scope.tenant_id, scope.project_id, scope.agent_id)


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    return [model(**row) for row in rows]


def _trigger(row: sqlite3.Row) -> ScheduledTrigger:
    data = dict(row)
    for key in _TRIGGER_DEFAULTED:
        if data[key] is None:
            del data[key]
    return ScheduledTrigger(**data)


def _encode_json(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def init_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = sqlite3.connect(str(db_path))
    db.row_factory = sqlite3.Row

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS scheduled_triggers (
            tenant_id TEXT NOT NULL,
            project_id TEXT NOT NULL,
            agent_id TEXT NOT NULL,
            id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            description TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            cron_expression TEXT,
            cron_timezone TEXT DEFAULT 'UTC',
            run_at TEXT,
            message_template TEXT,
            payload TEXT,
            max_retries INTEGER DEFAULT 3,
            retry_delay_seconds INTEGER DEFAULT 60,
            timeout_seconds INTEGER DEFAULT 300,
            workflow_run_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, project_id, agent_id, id)
        );

        CREATE TABLE IF NOT EXISTS scheduled_trigger_invocations (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            project_id TEXT NOT NULL,
            agent_id TEXT NOT NULL,
            scheduled_trigger_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            scheduled_for TEXT NOT NULL,
            idempotency_key TEXT NOT NULL,
            attempt_number INTEGER NOT NULL DEFAULT 1,
            resolved_payload TEXT,
            conversation_ids TEXT NOT NULL DEFAULT '[]',
            error_message TEXT,
            error_code TEXT,
            started_at TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (tenant_id, project_id, agent_id, scheduled_trigger_id,
                    idempotency_key)
        );

        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            scheduled_trigger_id TEXT NOT NULL,
            invocation_id TEXT NOT NULL,
            session_id TEXT,
            cwd TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS durable_timers (
            runner_id TEXT NOT NULL,
            timer_key TEXT NOT NULL,
            wake_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (runner_id, timer_key)
        );

        CREATE TABLE IF NOT EXISTS runner_checkpoints (
            runner_id TEXT PRIMARY KEY,
            last_scheduled_for TEXT,
            next_scheduled_for TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_invocations_trigger
            ON scheduled_trigger_invocations(scheduled_trigger_id, scheduled_for);
        CREATE INDEX IF NOT EXISTS idx_invocations_status
            ON scheduled_trigger_invocations(status);
        CREATE INDEX IF NOT EXISTS idx_triggers_enabled ON scheduled_triggers(enabled);
    """)
    )

    db.commit()
    return db


# -- scheduled triggers -------------------------------------------------------


def create_trigger(
    db: DbConnection,
    *,
    scope: TriggerScope,
    trigger_id: str,
    name: str = "",
    description: str | None = None,
    cron_expression: str | None = None,
    cron_timezone: str = "UTC",
    run_at: datetime | None = None,
    message_template: str | None = None,
    payload: dict[str, Any] | None = None,
    max_retries: int = 3,
    retry_delay_seconds: int = 60,
    timeout_seconds: int = 300,
    enabled: bool = True,
) -> ScheduledTrigger:
    now = _now()
    db.execute(
        dedent("""\
        INSERT INTO scheduled_triggers
            (tenant_id, project_id, agent_id, id, name, description, enabled,
             cron_expression, cron_timezone, run_at, message_template, payload,
             max_retries, retry_delay_seconds, timeout_seconds, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            *_scope_params(scope),
            trigger_id,
            name,
            description,
            int(enabled),
            cron_expression,
            cron_timezone,
            format_instant(run_at) if run_at is not None else None,
            message_template,
            _encode_json(payload),
            max_retries,
            retry_delay_seconds,
            timeout_seconds,
            now,
            now,
        ),
    )
    db.commit()
    trigger = get_trigger(db, scope, trigger_id)
    if trigger is None:
        raise sqlite3.DatabaseError(
            f"Scheduled trigger {trigger_id} missing after insert"
        )
    return trigger


def get_trigger(
    db: DbConnection, scope: TriggerScope, trigger_id: str
) -> ScheduledTrigger | None:
    row = db.execute(
        f"SELECT * FROM scheduled_triggers WHERE {_SCOPE_SQL} AND id = ?",
        (*_scope_params(scope), trigger_id),
    ).fetchone()
    return _trigger(row) if row else None


def list_triggers(
    db: DbConnection,
    scope: TriggerScope | None = None,
    *,
    enabled_only: bool = False,
) -> list[ScheduledTrigger]:
    clauses: list[str] = []
    params: list[Any] = []
    if scope is not None:
        clauses.append(_SCOPE_SQL)
        params.extend(_scope_params(scope))
    if enabled_only:
        clauses.append("enabled = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"SELECT * FROM scheduled_triggers {where} ORDER BY created_at", params
    ).fetchall()
    return [_trigger(row) for row in rows]


def update_trigger(
    db: DbConnection, scope: TriggerScope, trigger_id: str, **updates: Any
) -> None:
    fields = []
    values: list[Any] = []

    for key in [
        "name",
        "description",
        "enabled",
        "cron_expression",
        "cron_timezone",
        "run_at",
        "message_template",
        "payload",
        "max_retries",
        "retry_delay_seconds",
        "timeout_seconds",
        "workflow_run_id",
    ]:
        if key not in updates:
            continue
        value = updates[key]
        if key == "enabled":
            value = int(value)
        elif key == "run_at" and value is not None:
            value = format_instant(value)
        elif key == "payload":
            value = _encode_json(value)
        fields.append(f"{key} = ?")
        values.append(value)

    if not fields:
        return

    fields.append("updated_at = ?")
    values.extend([_now(), *_scope_params(scope), trigger_id])
    db.execute(
        f"UPDATE scheduled_triggers SET {', '.join(fields)} WHERE {_SCOPE_SQL} AND id = ?",
        values,
    )
    db.commit()


def delete_trigger(db: DbConnection, scope: TriggerScope, trigger_id: str) -> None:
    db.execute(
        f"DELETE FROM scheduled_triggers WHERE {_SCOPE_SQL} AND id = ?",
        (*_scope_params(scope), trigger_id),
    )
    db.commit()


# -- invocations --------------------------------------------------------------


def get_invocation(
    db: DbConnection, scope: TriggerScope, trigger_id: str, invocation_id: str
) -> ScheduledTriggerInvocation | None:
    row = db.execute(
        dedent(f"""\
        SELECT * FROM scheduled_trigger_invocations
        WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ? AND id = ?
    """),
        (*_scope_params(scope), trigger_id, invocation_id),
    ).fetchone()
    return ScheduledTriggerInvocation(**row) if row else None


def get_invocation_by_idempotency_key(
    db: DbConnection, scope: TriggerScope, trigger_id: str, idempotency_key: str
) -> ScheduledTriggerInvocation | None:
    row = db.execute(
        dedent(f"""\
        SELECT * FROM scheduled_trigger_invocations
        WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ? AND idempotency_key = ?
    """),
        (*_scope_params(scope), trigger_id, idempotency_key),
    ).fetchone()
    return ScheduledTriggerInvocation(**row) if row else None


def insert_invocation(
    db: DbConnection,
    *,
    invocation_id: str,
    scope: TriggerScope,
    trigger_id: str,
    scheduled_for: datetime,
    idempotency_key: str,
    resolved_payload: dict[str, Any] | None,
) -> ScheduledTriggerInvocation:
    """Insert a ``pending`` invocation at attempt 1.

    Raises :class:`sqlite3.IntegrityError` when *idempotency_key* is already
    taken for this trigger.
    """
    with db:
        db.execute(
            dedent("""\
            INSERT INTO scheduled_trigger_invocations
                (id, tenant_id, project_id, agent_id, scheduled_trigger_id, status,
                 scheduled_for, idempotency_key, attempt_number, resolved_payload,
                 created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, 1, ?, ?)
        """),
            (
                invocation_id,
                *_scope_params(scope),
                trigger_id,
                format_instant(scheduled_for),
                idempotency_key,
                _encode_json(resolved_payload),
                _now(),
            ),
        )
    invocation = get_invocation(db, scope, trigger_id, invocation_id)
    if invocation is None:
        raise sqlite3.DatabaseError(f"Invocation {invocation_id} missing after insert")
    return invocation


def _update_invocation(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    assignments: str,
    values: tuple[Any, ...],
    *,
    unless_cancelled: bool = False,
) -> ScheduledTriggerInvocation | None:
    guard = " AND status != 'cancelled'" if unless_cancelled else ""
    db.execute(
        dedent(f"""\
        UPDATE scheduled_trigger_invocations SET {assignments}
        WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ? AND id = ?{guard}
    """),
        (*values, *_scope_params(scope), trigger_id, invocation_id),
    )
    db.commit()
    return get_invocation(db, scope, trigger_id, invocation_id)


def mark_invocation_running(
    db: DbConnection, scope: TriggerScope, trigger_id: str, invocation_id: str
) -> ScheduledTriggerInvocation | None:
    # started_at keeps the first attempt's start time
    return _update_invocation(
        db,
        scope,
        trigger_id,
        invocation_id,
        "status = 'running', started_at = COALESCE(started_at, ?)",
        (_now(),),
        unless_cancelled=True,
    )


def mark_invocation_completed(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    conversation_id: str | None = None,
) -> ScheduledTriggerInvocation | None:
    if conversation_id is not None:
        append_conversation_id(db, scope, trigger_id, invocation_id, conversation_id)
    return _update_invocation(
        db,
        scope,
        trigger_id,
        invocation_id,
        "status = 'completed', completed_at = ?",
        (_now(),),
        unless_cancelled=True,
    )


def mark_invocation_failed(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    error_message: str,
    error_code: str | None = None,
) -> ScheduledTriggerInvocation | None:
    return _update_invocation(
        db,
        scope,
        trigger_id,
        invocation_id,
        "status = 'failed', completed_at = ?, error_message = ?, error_code = ?",
        (_now(), error_message, error_code),
        unless_cancelled=True,
    )


def mark_invocation_cancelled(
    db: DbConnection, scope: TriggerScope, trigger_id: str, invocation_id: str
) -> ScheduledTriggerInvocation | None:
    return _update_invocation(
        db,
        scope,
        trigger_id,
        invocation_id,
        "status = 'cancelled', completed_at = ?",
        (_now(),),
    )


def increment_invocation_attempt(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    current_attempt: int,
) -> ScheduledTriggerInvocation | None:
    return _update_invocation(
        db,
        scope,
        trigger_id,
        invocation_id,
        "attempt_number = ?, status = 'pending'",
        (current_attempt + 1,),
        unless_cancelled=True,
    )


def append_conversation_id(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    invocation_id: str,
    conversation_id: str,
) -> None:
    db.execute(
        dedent(f"""\
        UPDATE scheduled_trigger_invocations
        SET conversation_ids = json_insert(conversation_ids, '$[#]', ?)
        WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ? AND id = ?
          AND NOT EXISTS (
            SELECT 1 FROM json_each(scheduled_trigger_invocations.conversation_ids)
            WHERE json_each.value = ?
          )
    """),
        (
            conversation_id,
            *_scope_params(scope),
            trigger_id,
            invocation_id,
            conversation_id,
        ),
    )
    db.commit()


def list_invocations(
    db: DbConnection,
    scope: TriggerScope,
    trigger_id: str,
    *,
    status: InvocationStatus | None = None,
    limit: int = 50,
) -> list[ScheduledTriggerInvocation]:
    sql = (
        "SELECT * FROM scheduled_trigger_invocations "
        f"WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ?"
    )
    params: list[Any] = [*_scope_params(scope), trigger_id]
    if status is not None:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY scheduled_for DESC LIMIT ?"
    params.append(min(limit, 100))
    return _rows_to(ScheduledTriggerInvocation, db.execute(sql, params).fetchall())


def cancel_open_invocations(
    db: DbConnection, scope: TriggerScope, trigger_id: str
) -> int:
    """Cancel every ``pending`` or ``running`` invocation of a trigger."""
    cursor = db.execute(
        dedent(f"""\
        UPDATE scheduled_trigger_invocations
        SET status = 'cancelled', completed_at = ?
        WHERE {_SCOPE_SQL} AND scheduled_trigger_id = ?
          AND status IN ('pending', 'running')
    """),
        (_now(), *_scope_params(scope), trigger_id),
    )
    db.commit()
    return cursor.rowcount


# -- conversations ------------------------------------------------------------


def create_conversation(
    db: DbConnection,
    *,
    conversation_id: str,
    trigger_id: str,
    invocation_id: str,
    cwd: str,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO conversations
            (id, scheduled_trigger_id, invocation_id, cwd, created_at)
        VALUES (?, ?, ?, ?, ?)
    """),
        (conversation_id, trigger_id, invocation_id, cwd, _now()),
    )
    db.commit()


def set_conversation_session(
    db: DbConnection, conversation_id: str, session_id: str
) -> None:
    db.execute(
        "UPDATE conversations SET session_id = ? WHERE id = ?",
        (session_id, conversation_id),
    )
    db.commit()


def get_conversation(db: DbConnection, conversation_id: str) -> Conversation | None:
    row = db.execute(
        "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
    ).fetchone()
    return Conversation(**row) if row else None


# -- durable timers and runner checkpoints -------------------------------------


def get_timer_wake_at(db: DbConnection, runner_id: str, timer_key: str) -> str | None:
    row = db.execute(
        "SELECT wake_at FROM durable_timers WHERE runner_id = ? AND timer_key = ?",
        (runner_id, timer_key),
    ).fetchone()
    return row["wake_at"] if row else None


def insert_timer(
    db: DbConnection, runner_id: str, timer_key: str, wake_at: datetime
) -> None:
    db.execute(
        dedent("""\
        INSERT OR IGNORE INTO durable_timers (runner_id, timer_key, wake_at, created_at)
        VALUES (?, ?, ?, ?)
    """),
        (runner_id, timer_key, format_instant(wake_at), _now()),
    )
    db.commit()


def delete_timers(db: DbConnection, runner_id: str) -> None:
    db.execute("DELETE FROM durable_timers WHERE runner_id = ?", (runner_id,))
    db.commit()


def get_checkpoint(db: DbConnection, runner_id: str) -> sqlite3.Row | None:
    return db.execute(
        "SELECT * FROM runner_checkpoints WHERE runner_id = ?", (runner_id,)
    ).fetchone()


def save_checkpoint(
    db: DbConnection,
    runner_id: str,
    *,
    last_scheduled_for: datetime | None,
    next_scheduled_for: datetime | None,
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO runner_checkpoints
            (runner_id, last_scheduled_for, next_scheduled_for, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(runner_id) DO UPDATE SET
            last_scheduled_for = excluded.last_scheduled_for,
            next_scheduled_for = excluded.next_scheduled_for,
            updated_at = excluded.updated_at
    """),
        (
            runner_id,
            format_instant(last_scheduled_for) if last_scheduled_for else None,
            format_instant(next_scheduled_for) if next_scheduled_for else None,
            _now(),
        ),
    )
    db.commit()


def delete_checkpoint(db: DbConnection, runner_id: str) -> None:
    db.execute("DELETE FROM runner_checkpoints WHERE runner_id = ?", (runner_id,))
    db.commit()
