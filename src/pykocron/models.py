from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field

InvocationStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
RunnerStatus = Literal["stopped", "already_executed", "completed", "failed"]
StopReason = Literal["deleted", "disabled", "superseded"]


def _decode_json(value: Any) -> Any:
    # sqlite rows carry JSON columns as text
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


JsonObject = Annotated[dict[str, Any] | None, BeforeValidator(_decode_json)]
JsonList = Annotated[list[str], BeforeValidator(_decode_json)]
UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class TriggerScope(BaseModel):
    model_config = {"frozen": True}

    tenant_id: str
    project_id: str
    agent_id: str


class ScheduledTrigger(BaseModel):
    id: str
    tenant_id: str
    project_id: str
    agent_id: str
    name: str = ""
    description: str | None = None
    enabled: bool = True
    cron_expression: str | None = None
    cron_timezone: str = "UTC"
    run_at: UtcDatetime | None = None
    message_template: str | None = None
    payload: JsonObject = None
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: int = Field(default=60, ge=0)
    timeout_seconds: int = Field(default=300, gt=0)
    workflow_run_id: str | None = None
    created_at: str
    updated_at: str

    @property
    def scope(self) -> TriggerScope:
        return TriggerScope(
            tenant_id=self.tenant_id,
            project_id=self.project_id,
            agent_id=self.agent_id,
        )

    @property
    def is_one_time(self) -> bool:
        return self.run_at is not None


class ScheduledTriggerInvocation(BaseModel):
    id: str
    tenant_id: str
    project_id: str
    agent_id: str
    scheduled_trigger_id: str
    status: InvocationStatus = "pending"
    scheduled_for: UtcDatetime
    idempotency_key: str
    attempt_number: int = Field(default=1, ge=1)
    resolved_payload: JsonObject = None
    conversation_ids: JsonList = Field(default_factory=list)
    error_message: str | None = None
    error_code: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str


class InvocationCreateResult(BaseModel):
    invocation: ScheduledTriggerInvocation
    already_existed: bool


class Conversation(BaseModel):
    id: str
    scheduled_trigger_id: str
    invocation_id: str
    session_id: str | None = None
    cwd: str | None = None
    created_at: str


class ExecutionResult(BaseModel):
    conversation_id: str
    success: bool = True


class RunnerOutcome(BaseModel):
    """Terminal result of a runner; stop conditions are values, not errors."""

    status: RunnerStatus
    reason: StopReason | None = None
    invocation_id: str | None = None
