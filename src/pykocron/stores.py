"""Store interfaces consumed by the runner, and their sqlite implementations.

The runner only talks to :class:`TriggerConfigStore` and
:class:`InvocationStore`; tests and alternative backends can supply anything
that satisfies these protocols.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pykocron import db as dbops
from pykocron.db import DbConnection
from pykocron.errors import PersistenceError
from pykocron.models import (
    InvocationCreateResult,
    ScheduledTrigger,
    ScheduledTriggerInvocation,
    TriggerScope,
)

log = logging.getLogger(__name__)


@runtime_checkable
class TriggerConfigStore(Protocol):
    def get(self, scope: TriggerScope, trigger_id: str) -> ScheduledTrigger | None:
        """Return the trigger, or ``None`` when it no longer exists."""
        ...


@runtime_checkable
class InvocationStore(Protocol):
    """Invocation records, keyed for idempotency by ``idempotency_key``.

    Keys are unique per trigger, so every lookup is scoped to one.
    """

    def get_by_idempotency_key(
        self, scope: TriggerScope, trigger_id: str, idempotency_key: str
    ) -> ScheduledTriggerInvocation | None: ...

    def create_if_absent(
        self,
        scope: TriggerScope,
        trigger_id: str,
        *,
        idempotency_key: str,
        scheduled_for: datetime,
        resolved_payload: dict[str, Any] | None,
    ) -> InvocationCreateResult:
        """Create a ``pending`` invocation unless *idempotency_key* exists.

        Must be safe under concurrent callers: a losing writer gets the
        winner's row back with ``already_existed=True``.
        """
        ...

    def get_by_id(
        self, scope: TriggerScope, trigger_id: str, invocation_id: str
    ) -> ScheduledTriggerInvocation | None: ...

    def mark_running(
        self, scope: TriggerScope, trigger_id: str, invocation_id: str
    ) -> None: ...

    def mark_completed(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        conversation_id: str | None = None,
    ) -> None: ...

    def mark_failed(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        error_message: str,
        error_code: str | None = None,
    ) -> None: ...

    def increment_attempt(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        current_attempt: int,
    ) -> None:
        """Set ``attempt_number = current_attempt + 1`` and status ``pending``."""
        ...

    def append_conversation_id(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        conversation_id: str,
    ) -> None: ...


@contextmanager
def persistence_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise PersistenceError(f"{operation} failed: {e}") from e


class SqliteTriggerConfigStore:
    def __init__(self, db: DbConnection) -> None:
        self._db = db

    def get(self, scope: TriggerScope, trigger_id: str) -> ScheduledTrigger | None:
        with persistence_errors("get trigger"):
            return dbops.get_trigger(self._db, scope, trigger_id)


class SqliteInvocationStore:
    def __init__(self, db: DbConnection) -> None:
        self._db = db

    def get_by_idempotency_key(
        self, scope: TriggerScope, trigger_id: str, idempotency_key: str
    ) -> ScheduledTriggerInvocation | None:
        with persistence_errors("get invocation by idempotency key"):
            return dbops.get_invocation_by_idempotency_key(
                self._db, scope, trigger_id, idempotency_key
            )

    def create_if_absent(
        self,
        scope: TriggerScope,
        trigger_id: str,
        *,
        idempotency_key: str,
        scheduled_for: datetime,
        resolved_payload: dict[str, Any] | None,
    ) -> InvocationCreateResult:
        existing = self.get_by_idempotency_key(scope, trigger_id, idempotency_key)
        if existing is not None:
            log.info(
                "Invocation %s already exists for key %s, skipping creation",
                existing.id,
                idempotency_key,
            )
            return InvocationCreateResult(invocation=existing, already_existed=True)

        try:
            invocation = dbops.insert_invocation(
                self._db,
                invocation_id=uuid.uuid4().hex,
                scope=scope,
                trigger_id=trigger_id,
                scheduled_for=scheduled_for,
                idempotency_key=idempotency_key,
                resolved_payload=resolved_payload,
            )
        except sqlite3.IntegrityError as e:
            # Another runner inserted the same occurrence between our read
            # and our write; its row is the one that counts.
            winner = self.get_by_idempotency_key(scope, trigger_id, idempotency_key)
            if winner is None:
                raise PersistenceError(f"create invocation failed: {e}") from e
            log.info(
                "Lost creation race for key %s to invocation %s",
                idempotency_key,
                winner.id,
            )
            return InvocationCreateResult(invocation=winner, already_existed=True)
        except sqlite3.Error as e:
            raise PersistenceError(f"create invocation failed: {e}") from e

        log.info(
            "Created invocation %s for trigger %s with key %s",
            invocation.id,
            trigger_id,
            idempotency_key,
        )
        return InvocationCreateResult(invocation=invocation, already_existed=False)

    def get_by_id(
        self, scope: TriggerScope, trigger_id: str, invocation_id: str
    ) -> ScheduledTriggerInvocation | None:
        with persistence_errors("get invocation"):
            return dbops.get_invocation(self._db, scope, trigger_id, invocation_id)

    def mark_running(
        self, scope: TriggerScope, trigger_id: str, invocation_id: str
    ) -> None:
        with persistence_errors("mark invocation running"):
            dbops.mark_invocation_running(self._db, scope, trigger_id, invocation_id)

    def mark_completed(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        conversation_id: str | None = None,
    ) -> None:
        with persistence_errors("mark invocation completed"):
            dbops.mark_invocation_completed(
                self._db, scope, trigger_id, invocation_id, conversation_id
            )

    def mark_failed(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        error_message: str,
        error_code: str | None = None,
    ) -> None:
        with persistence_errors("mark invocation failed"):
            dbops.mark_invocation_failed(
                self._db, scope, trigger_id, invocation_id, error_message, error_code
            )

    def increment_attempt(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        current_attempt: int,
    ) -> None:
        with persistence_errors("increment invocation attempt"):
            dbops.increment_invocation_attempt(
                self._db, scope, trigger_id, invocation_id, current_attempt
            )

    def append_conversation_id(
        self,
        scope: TriggerScope,
        trigger_id: str,
        invocation_id: str,
        conversation_id: str,
    ) -> None:
        with persistence_errors("append conversation id"):
            dbops.append_conversation_id(
                self._db, scope, trigger_id, invocation_id, conversation_id
            )
