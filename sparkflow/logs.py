"""Execution log mirror.

Writes one ``function_logs`` row per run: created when the run first starts,
refreshed on every intermediate step output and finalized exactly once when
the run produces a terminal outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .contracts import Terminal, WorkflowEvent, WorkflowOutcome
from .persistence import RunRepository
from .persistence.models import ExecutionInstance, ExecutionLogEntry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _LogContext:
    run_id: str
    started_at: datetime


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return max(0, int((completed_at - started_at).total_seconds() * 1000))


class RunLogHooks:
    """Lifecycle hooks of a single run, created by ``ExecutionLogMiddleware``."""

    def __init__(
        self,
        middleware: "ExecutionLogMiddleware",
        instance: ExecutionInstance,
        event: WorkflowEvent,
    ) -> None:
        self._middleware = middleware
        self._instance = instance
        self._event = event

    @property
    def run_id(self) -> str:
        return self._instance.run_id

    async def before_execution(self) -> None:
        try:
            await self._middleware.start(self._instance, self._event)
        except Exception as exc:
            logger.error(f"Failed to create execution log for {self.run_id}: {exc}")

    async def on_step_output(self, outcome: WorkflowOutcome) -> None:
        try:
            await self._middleware.record(self.run_id, outcome)
        except Exception as exc:
            logger.error(f"Failed to update execution log for {self.run_id}: {exc}")

    async def on_run_end(self) -> None:
        self._middleware.release(self.run_id)


class ExecutionLogMiddleware:
    """Mirror run lifecycle into the execution log table.

    In-memory context is an optimization only. When it is missing, for
    example after a process restart, the stored log entry is used instead,
    and the storage-level ``status = 'started'`` guard keeps finalization
    idempotent.
    """

    def __init__(self, repository: RunRepository) -> None:
        self._repository = repository
        self._contexts: Dict[str, _LogContext] = {}
        self._completing: Set[str] = set()

    def on_run(self, instance: ExecutionInstance, event: WorkflowEvent) -> RunLogHooks:
        return RunLogHooks(self, instance, event)

    async def start(self, instance: ExecutionInstance, event: WorkflowEvent) -> None:
        entry, created = await self._repository.find_or_create_log(
            ExecutionLogEntry(
                run_id=instance.run_id,
                workflow_name=instance.workflow_name,
                workflow_id=instance.workflow_id,
                tenant_id=instance.tenant_id,
                status="started",
                input_params={
                    "event": event.model_dump(mode="json"),
                    "eventName": event.name,
                },
            )
        )
        self._contexts[instance.run_id] = _LogContext(
            run_id=instance.run_id, started_at=entry.started_at
        )
        if entry.is_terminal:
            self._completing.add(instance.run_id)
        elif created:
            logger.debug(f"Execution log created for {instance.run_id}")

    async def record(self, run_id: str, outcome: WorkflowOutcome) -> None:
        if run_id in self._completing:
            return

        context = self._contexts.get(run_id)
        if context is None:
            stored = await self._repository.get_log(run_id)
            if stored is None:
                logger.warning(f"No execution log found for run {run_id}")
                return
            if stored.is_terminal:
                self._completing.add(run_id)
                return
            context = _LogContext(run_id=run_id, started_at=stored.started_at)
            self._contexts[run_id] = context

        if not isinstance(outcome, Terminal):
            await self._repository.update_log_result(run_id, outcome.value)
            return

        self._completing.add(run_id)
        await self._finalize(context, outcome)

    async def _finalize(self, context: _LogContext, outcome: Terminal) -> None:
        completed_at = utcnow()
        duration_ms = _duration_ms(context.started_at, completed_at)
        error_message: Optional[str] = None
        error_stack: Optional[str] = None
        status = "completed"
        if not outcome.ok:
            status = "failed"
            error_message = outcome.error
            error_stack = outcome.trace
        changed = await self._repository.finalize_log(
            context.run_id,
            status=status,
            completed_at=completed_at,
            duration_ms=duration_ms,
            result_data=outcome.payload,
            error_message=error_message,
            error_stack=error_stack,
        )
        if changed:
            logger.info(
                f"Execution log for {context.run_id} marked {status} ({duration_ms} ms)"
            )

    def release(self, run_id: str) -> None:
        """Forget in-memory state of a run once an invocation is over."""
        self._contexts.pop(run_id, None)
        self._completing.discard(run_id)
