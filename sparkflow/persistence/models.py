"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

StepStatus = Literal["pending", "succeeded", "failed"]
LogStatus = Literal["started", "completed", "failed"]

TERMINAL_LOG_STATUSES = ("completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionInstance(BaseModel):
    """One invocation of one workflow definition."""

    run_id: str
    workflow_name: str
    workflow_id: str
    event_name: str
    event: dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StepRecord(BaseModel):
    """Memoized result of one named step within one run."""

    run_id: str
    step_name: str
    status: StepStatus = "pending"
    result: Any = None
    error: Optional[str] = None
    attempts: int = 1
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ExecutionLogEntry(BaseModel):
    """Observability mirror of an execution instance."""

    run_id: str
    workflow_name: str
    workflow_id: str
    tenant_id: Optional[str] = None
    status: LogStatus = "started"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input_params: Optional[dict[str, Any]] = None
    result_data: Any = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOG_STATUSES
