"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .models import ExecutionInstance, ExecutionLogEntry, StepRecord, utcnow
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, ExecutionInstance] = {}
        self._steps: Dict[Tuple[str, str], StepRecord] = {}
        self._logs: Dict[str, ExecutionLogEntry] = {}

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ExecutionInstance) -> ExecutionInstance:
        stored = self._instances.setdefault(instance.run_id, instance)
        return stored.model_copy()

    async def get_instance(self, run_id: str) -> ExecutionInstance | None:
        instance = self._instances.get(run_id)
        return instance.model_copy() if instance else None

    async def load_steps(self, run_id: str) -> dict[str, StepRecord]:
        return {
            name: record.model_copy()
            for (rid, name), record in self._steps.items()
            if rid == run_id
        }

    async def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        record = self._steps.get((run_id, step_name))
        return record.model_copy() if record else None

    async def claim_step(
        self, run_id: str, step_name: str, stale_before: datetime
    ) -> bool:
        key = (run_id, step_name)
        record = self._steps.get(key)
        now = utcnow()
        if record is None:
            self._steps[key] = StepRecord(
                run_id=run_id, step_name=step_name, status="pending", claimed_at=now
            )
            return True
        reclaimable = record.status == "failed" or (
            record.status == "pending"
            and record.claimed_at is not None
            and record.claimed_at < stale_before
        )
        if not reclaimable:
            return False
        record.status = "pending"
        record.error = None
        record.attempts += 1
        record.claimed_at = now
        return True

    async def complete_step(self, run_id: str, step_name: str, result: Any) -> None:
        record = self._steps.get((run_id, step_name))
        if record is None or record.status != "pending":
            return
        record.status = "succeeded"
        record.result = result
        record.completed_at = utcnow()

    async def fail_step(self, run_id: str, step_name: str, error: str) -> None:
        record = self._steps.get((run_id, step_name))
        if record is None or record.status != "pending":
            return
        record.status = "failed"
        record.error = error
        record.completed_at = utcnow()

    # ------------------------------------------------------------------
    async def find_or_create_log(
        self, entry: ExecutionLogEntry
    ) -> tuple[ExecutionLogEntry, bool]:
        existing = self._logs.get(entry.run_id)
        if existing is not None:
            return existing.model_copy(), False
        self._logs[entry.run_id] = entry.model_copy()
        return entry.model_copy(), True

    async def get_log(self, run_id: str) -> ExecutionLogEntry | None:
        entry = self._logs.get(run_id)
        return entry.model_copy() if entry else None

    async def update_log_result(self, run_id: str, result_data: Any) -> bool:
        entry = self._logs.get(run_id)
        if entry is None or entry.is_terminal:
            return False
        entry.result_data = result_data
        return True

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
        entry = self._logs.get(run_id)
        if entry is None or entry.is_terminal:
            return False
        entry.status = status
        entry.completed_at = completed_at
        entry.duration_ms = duration_ms
        entry.result_data = result_data
        entry.error_message = error_message
        entry.error_stack = error_stack
        return True

    async def list_logs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionLogEntry]:
        entries = [
            e
            for e in self._logs.values()
            if (tenant_id is None or e.tenant_id == tenant_id)
            and (status is None or e.status == status)
            and (workflow_name is None or e.workflow_name == workflow_name)
        ]
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy() for e in entries[offset : offset + limit]]
