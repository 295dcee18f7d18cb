"""Repository abstraction for run state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import ExecutionInstance, ExecutionLogEntry, StepRecord


class RunRepository(Protocol):
    """Protocol for run state persistence backends.

    Steps are keyed by ``(run_id, step_name)`` and log entries by ``run_id``;
    both keys are unique at the storage layer.
    """

    async def create_instance(self, instance: ExecutionInstance) -> ExecutionInstance:
        """Insert the instance unless the run id exists, then return the stored row."""

    async def get_instance(self, run_id: str) -> ExecutionInstance | None:
        """Retrieve an execution instance by run id."""

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        """Return all step records of a run keyed by step name."""

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        """Retrieve a single step record."""

    async def claim_step(
        self, run_id: str, step_name: str, stale_before: datetime
    ) -> bool:
        """Take ownership of a step before running its body.

        Inserts a pending record if none exists. A failed record, or a pending
        one claimed before ``stale_before``, is re-claimed. Returns ``False``
        when another invocation owns the step or it already succeeded.
        """

    async def complete_step(self, run_id: str, step_name: str, result: Any) -> None:
        """Store the result of a pending step and mark it succeeded."""

    async def fail_step(self, run_id: str, step_name: str, error: str) -> None:
        """Mark a pending step as failed."""

    async def find_or_create_log(
        self, entry: ExecutionLogEntry
    ) -> tuple[ExecutionLogEntry, bool]:
        """Insert the log entry unless one exists for its run id.

        Returns the stored entry and whether it was created by this call.
        """

    async def get_log(self, run_id: str) -> ExecutionLogEntry | None:
        """Retrieve the log entry of a run."""

    async def update_log_result(self, run_id: str, result_data: Any) -> bool:
        """Replace the result snapshot of a log entry that is still started."""

    async def finalize_log(
        self,
        run_id: str,
        status: str,
        completed_at: datetime,
        duration_ms: Optional[int],
        result_data: Any = None,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
    ) -> bool:
        """Move a started log entry to a terminal status exactly once."""

    async def list_logs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionLogEntry]:
        """Return log entries, newest first."""
