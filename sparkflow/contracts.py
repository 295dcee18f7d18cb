"""Core event and outcome contracts for sparkflow workflows."""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

LAST_STEP_KEYS = ("last_step", "lastStep", "isLastStep")


class WorkflowEvent(BaseModel):
    """Named event with a JSON payload. Exactly one workflow subscribes per name."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tenant_id(self) -> Optional[str]:
        return self.data.get("tenant_id")

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class Intermediate(BaseModel):
    """Output of a step that completed while the workflow is still running."""

    kind: Literal["intermediate"] = "intermediate"
    step_name: Optional[str] = None
    value: Any = None


class Terminal(BaseModel):
    """Final outcome of a workflow run, either successful or failed."""

    kind: Literal["terminal"] = "terminal"
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    trace: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def payload(self) -> Dict[str, Any]:
        """Result shape stored in the execution log and returned to callers."""
        body: Dict[str, Any] = {"success": self.ok, **self.data}
        if self.error is not None:
            body["error"] = self.error
        body["last_step"] = True
        return body


WorkflowOutcome = Union[Intermediate, Terminal]


def succeeded(**data: Any) -> Terminal:
    """Build the successful terminal outcome of a workflow."""
    return Terminal(data=data)


def failed(error: str | BaseException, **data: Any) -> Terminal:
    """Build the failed terminal outcome of a workflow.

    When ``error`` is an exception its formatted traceback is kept so the
    execution log can record the stack.
    """
    trace = None
    if isinstance(error, BaseException):
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        error = str(error) or type(error).__name__
    return Terminal(data=data, error=error, trace=trace)


def _has_last_step(value: Dict[str, Any]) -> bool:
    return any(value.get(key) is True for key in LAST_STEP_KEYS)


def coerce_outcome(result: Any) -> WorkflowOutcome:
    """Normalize a workflow return value to an outcome.

    Plain dicts are accepted for compatibility with marker-style results: a
    ``last_step`` marker at the top level or nested under ``data`` makes the
    result terminal, anything else is intermediate.
    """
    if isinstance(result, (Intermediate, Terminal)):
        return result
    if not isinstance(result, dict):
        return Intermediate(value=result)

    body = result
    if not _has_last_step(result):
        nested = result.get("data")
        if not (isinstance(nested, dict) and _has_last_step(nested)):
            return Intermediate(value=result)
        body = nested

    data = {
        key: value
        for key, value in body.items()
        if key not in LAST_STEP_KEYS and key not in ("success", "error")
    }
    error = result.get("error") or body.get("error")
    if isinstance(error, BaseException):
        return failed(error, **data)
    if error is None and body.get("success") is False:
        error = "Unknown error"
    return Terminal(data=data, error=str(error) if error else None)
