"""Step memoization runtime and workflow engine.

A run is identified by ``run_id`` and may be entered many times. Every named
step is executed at most once per run: its JSON result is stored under the
unique ``(run_id, step_name)`` key and replayed on later invocations.
"""

from __future__ import annotations

import inspect
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from .contracts import (
    Intermediate,
    Terminal,
    WorkflowEvent,
    WorkflowOutcome,
    coerce_outcome,
    failed,
)
from .errors import DuplicateStepError, SparkflowError, StepFailed, StepInProgress
from .persistence import RunRepository, get_repository
from .persistence.models import ExecutionInstance, StepRecord, utcnow
from .utils import schedule_retry
from .workflows.registry import (
    REGISTRY,
    WorkflowDefinition,
    get_workflow,
    get_workflow_by_id,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefix log records with the workflow id and run id."""

    def process(self, msg, kwargs):
        extra = self.extra or {}
        return f"[{extra.get('workflow')} {extra.get('run_id')}] {msg}", kwargs


class StepYield(BaseException):
    """Raised after a fresh step in incremental mode to end the invocation.

    Derives from ``BaseException`` so ``except Exception`` blocks inside
    workflow code do not intercept it.
    """

    def __init__(self, step_name: str, value: Any) -> None:
        super().__init__(step_name)
        self.step_name = step_name
        self.value = value


class RunHooks(Protocol):
    async def before_execution(self) -> None: ...

    async def on_step_output(self, outcome: WorkflowOutcome) -> None: ...

    async def on_run_end(self) -> None: ...


class RunObserver(Protocol):
    def on_run(self, instance: ExecutionInstance, event: WorkflowEvent) -> RunHooks: ...


def _normalize(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class StepRunner:
    """Executes named steps of one invocation against the run repository."""

    def __init__(
        self,
        ctx: "ExecutionContext",
        repository: RunRepository,
        stale_after: timedelta,
        steps_per_invocation: Optional[int] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._ctx = ctx
        self._repository = repository
        self._stale_after = stale_after
        self._steps_per_invocation = steps_per_invocation
        self._sleep = sleep
        self._seen: set[str] = set()
        self.fresh_steps = 0

    async def run(
        self,
        name: str,
        body: Callable[[], Any],
        retries: int = 0,
    ) -> Any:
        """Run ``body`` once per run under ``name`` and return its stored result."""
        ctx = self._ctx
        if name in self._seen:
            raise DuplicateStepError(
                f"Step name '{name}' used more than once in run {ctx.run_id}"
            )
        self._seen.add(name)

        cached = ctx.cache.get(name)
        if cached is not None and cached.succeeded:
            ctx.logger.debug(f"Replaying step {name}")
            return cached.result

        stale_before = utcnow() - self._stale_after
        if not await self._repository.claim_step(ctx.run_id, name, stale_before):
            record = await self._repository.get_step(ctx.run_id, name)
            if record is not None and record.succeeded:
                ctx.cache[name] = record
                return record.result
            raise StepInProgress(ctx.run_id, name)

        ctx.logger.info(f"Running step {name}")
        attempt = 0
        while True:
            try:
                value = body()
                if inspect.isawaitable(value):
                    value = await value
                break
            except Exception as exc:
                if attempt >= retries:
                    ctx.logger.error(f"Step {name} failed: {exc}")
                    await self._repository.fail_step(ctx.run_id, name, str(exc))
                    raise StepFailed(name, exc) from exc
                attempt += 1
                ctx.logger.warning(
                    f"Step {name} failed (attempt {attempt}/{retries + 1}): {exc}"
                )
                await schedule_retry(attempt, sleep=self._sleep)

        normalized = _normalize(value)
        ctx.pending[name] = normalized
        await self._repository.complete_step(ctx.run_id, name, normalized)
        record = await self._repository.get_step(ctx.run_id, name)
        ctx.pending.pop(name, None)

        result = normalized
        if record is not None:
            ctx.cache[name] = record
            if record.succeeded:
                result = record.result
        self.fresh_steps += 1

        if (
            self._steps_per_invocation is not None
            and self.fresh_steps >= self._steps_per_invocation
        ):
            raise StepYield(name, result)
        return result


class ExecutionContext:
    """Per-invocation view of a run handed to workflow functions as ``ctx``."""

    def __init__(
        self,
        run_id: str,
        event: WorkflowEvent,
        cache: Dict[str, StepRecord],
        logger: logging.LoggerAdapter,
        invocation: int = 1,
    ) -> None:
        self.run_id = run_id
        self.event = event
        self.cache = cache
        # Results computed by a step body but not yet acknowledged by storage.
        self.pending: Dict[str, Any] = {}
        self.logger = logger
        self.invocation = invocation
        self.step: StepRunner

    @property
    def data(self) -> Dict[str, Any]:
        return self.event.data

    @property
    def tenant_id(self) -> Optional[str]:
        return self.event.tenant_id


class WorkflowEngine:
    """Drive workflow runs to a terminal outcome.

    Args:
        repository: Run state storage. Defaults to ``get_repository()``.
        deps: Object passed as the second argument to every workflow.
        observers: Lifecycle observers such as ``ExecutionLogMiddleware``.
        steps_per_invocation: When set, an invocation ends after this many
            fresh steps and the workflow is re-entered, replaying cached
            steps. ``None`` runs the whole workflow in one invocation.
        stale_after: Age after which a pending step claim may be taken over.
        max_invocations: Safeguard against a workflow that never terminates.
    """

    def __init__(
        self,
        repository: RunRepository | None = None,
        deps: Any = None,
        observers: Iterable[RunObserver] = (),
        registry: Optional[Dict[str, WorkflowDefinition]] = None,
        steps_per_invocation: Optional[int] = None,
        stale_after: timedelta = timedelta(minutes=10),
        max_invocations: int = 1000,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._repository = repository or get_repository()
        self._deps = deps
        self._observers: List[RunObserver] = list(observers)
        self._registry = registry
        self._steps_per_invocation = steps_per_invocation
        self._stale_after = stale_after
        self._max_invocations = max_invocations
        self._sleep = sleep

    @property
    def repository(self) -> RunRepository:
        return self._repository

    def _resolve(self, event_name: str) -> WorkflowDefinition:
        if self._registry is not None and event_name in self._registry:
            return self._registry[event_name]
        return get_workflow(event_name)

    async def run(
        self, event: WorkflowEvent, run_id: Optional[str] = None
    ) -> WorkflowOutcome:
        """Run the workflow subscribed to ``event`` until it returns.

        The run id defaults to the event id so a redelivered event re-enters
        the same run instead of starting a new one.
        """
        definition = self._resolve(event.name)
        return await self._execute(definition, event, run_id or event.id)

    async def resume(self, run_id: str) -> WorkflowOutcome:
        """Re-enter an existing run, replaying succeeded steps."""
        instance = await self._repository.get_instance(run_id)
        if instance is None:
            raise SparkflowError(f"Run {run_id} not found")
        event = WorkflowEvent.model_validate(instance.event)
        definition = get_workflow_by_id(instance.workflow_id)
        if definition is None:
            registry = self._registry or REGISTRY
            definition = next(
                (d for d in registry.values() if d.id == instance.workflow_id), None
            )
        if definition is None:
            raise SparkflowError(f"Workflow {instance.workflow_id} is not registered")
        return await self._execute(definition, event, run_id)

    async def _execute(
        self, definition: WorkflowDefinition, event: WorkflowEvent, run_id: str
    ) -> WorkflowOutcome:
        instance = await self._repository.create_instance(
            ExecutionInstance(
                run_id=run_id,
                workflow_name=definition.name,
                workflow_id=definition.id,
                event_name=event.name,
                event=event.model_dump(mode="json"),
                tenant_id=event.tenant_id,
            )
        )
        run_logger = RunLoggerAdapter(
            logger, {"run_id": run_id, "workflow": definition.id}
        )
        hooks = [observer.on_run(instance, event) for observer in self._observers]
        await self._notify(hooks, "before_execution")

        outcome: WorkflowOutcome | None = None
        try:
            for invocation in range(1, self._max_invocations + 1):
                ctx = await self._context(run_id, event, run_logger, invocation)
                try:
                    outcome = coerce_outcome(await definition.fn(ctx, self._deps))
                except StepYield as step_yield:
                    outcome = Intermediate(
                        step_name=step_yield.step_name, value=step_yield.value
                    )
                    await self._notify(hooks, "on_step_output", outcome)
                    continue
                except StepInProgress as exc:
                    run_logger.info(f"Invocation ended: {exc}")
                    return Intermediate(step_name=exc.step_name)
                except StepFailed as exc:
                    run_logger.error(f"Run failed at step {exc.step_name}: {exc.cause}")
                    outcome = failed(exc, step=exc.step_name)
                except Exception as exc:
                    run_logger.exception(f"Workflow raised: {exc}")
                    outcome = failed(exc)
                if ctx.pending:
                    run_logger.warning(
                        f"Step results not persisted: {sorted(ctx.pending)}"
                    )
                await self._notify(hooks, "on_step_output", outcome)
                break
            else:
                outcome = failed(
                    f"Run did not finish within {self._max_invocations} invocations"
                )
                await self._notify(hooks, "on_step_output", outcome)
        finally:
            await self._notify(hooks, "on_run_end")

        if isinstance(outcome, Terminal):
            status = "completed" if outcome.ok else "failed"
            run_logger.info(f"Run {status}")
        return outcome

    async def _context(
        self,
        run_id: str,
        event: WorkflowEvent,
        run_logger: logging.LoggerAdapter,
        invocation: int,
    ) -> ExecutionContext:
        cache = await self._repository.load_steps(run_id)
        ctx = ExecutionContext(run_id, event, cache, run_logger, invocation)
        ctx.step = StepRunner(
            ctx,
            self._repository,
            stale_after=self._stale_after,
            steps_per_invocation=self._steps_per_invocation,
            sleep=self._sleep,
        )
        return ctx

    async def _notify(self, hooks: List[RunHooks], method: str, *args: Any) -> None:
        for hook in hooks:
            try:
                await getattr(hook, method)(*args)
            except Exception as exc:
                logger.error(f"Run observer {method} failed: {exc}")
