"""Execution log mirror tests."""

import pytest

from sparkflow.contracts import Intermediate, WorkflowEvent, failed, succeeded
from sparkflow.logs import ExecutionLogMiddleware
from sparkflow.persistence import InMemoryRunRepository, SQLiteRunRepository
from sparkflow.persistence.models import ExecutionInstance
from sparkflow.runtime import WorkflowEngine
from sparkflow.workflows.registry import WorkflowDefinition


def _registry(fn):
    return {
        "test/log": WorkflowDefinition(
            id="log-workflow", event="test/log", name="Log Workflow", fn=fn
        )
    }


def _instance(run_id="run-1"):
    return ExecutionInstance(
        run_id=run_id,
        workflow_name="Log Workflow",
        workflow_id="log-workflow",
        event_name="test/log",
        tenant_id="t1",
    )


@pytest.mark.asyncio
async def test_completed_run_is_logged_once(tmp_path):
    repo = SQLiteRunRepository(tmp_path / "runs.db")

    async def fn(ctx, deps):
        await ctx.step.run("one", lambda: 1)
        await ctx.step.run("two", lambda: 2)
        return succeeded(total=3)

    engine = WorkflowEngine(
        repository=repo,
        registry=_registry(fn),
        observers=[ExecutionLogMiddleware(repo)],
        steps_per_invocation=1,
    )
    event = WorkflowEvent(name="test/log", data={"tenant_id": "t1"})
    await engine.run(event)

    log = await repo.get_log(event.id)
    assert log.status == "completed"
    assert log.tenant_id == "t1"
    assert log.workflow_id == "log-workflow"
    assert log.duration_ms is not None
    assert log.result_data == {"success": True, "total": 3, "last_step": True}
    assert log.input_params["eventName"] == "test/log"
    assert log.input_params["event"]["data"] == {"tenant_id": "t1"}


@pytest.mark.asyncio
async def test_intermediate_output_keeps_run_started():
    repo = InMemoryRunRepository()
    middleware = ExecutionLogMiddleware(repo)
    hooks = middleware.on_run(_instance(), WorkflowEvent(name="test/log"))

    await hooks.before_execution()
    await hooks.on_step_output(Intermediate(step_name="one", value={"fetched": 10}))

    log = await repo.get_log("run-1")
    assert log.status == "started"
    assert log.result_data == {"fetched": 10}


@pytest.mark.asyncio
async def test_failed_outcome_records_error():
    repo = InMemoryRunRepository()
    middleware = ExecutionLogMiddleware(repo)
    hooks = middleware.on_run(_instance(), WorkflowEvent(name="test/log"))

    await hooks.before_execution()
    try:
        raise ValueError("bad payload")
    except ValueError as exc:
        await hooks.on_step_output(failed(exc, imported=0))

    log = await repo.get_log("run-1")
    assert log.status == "failed"
    assert log.error_message == "bad payload"
    assert "ValueError" in log.error_stack
    assert log.result_data["success"] is False
    assert log.result_data["imported"] == 0


@pytest.mark.asyncio
async def test_terminal_outcome_after_restart_uses_stored_entry():
    repo = InMemoryRunRepository()
    first = ExecutionLogMiddleware(repo)
    hooks = first.on_run(_instance(), WorkflowEvent(name="test/log"))
    await hooks.before_execution()
    await hooks.on_step_output(Intermediate(step_name="one", value=1))

    # A new process has no in-memory context for the run.
    restarted = ExecutionLogMiddleware(repo)
    await restarted.record("run-1", succeeded(done=True))

    log = await repo.get_log("run-1")
    assert log.status == "completed"
    assert log.result_data["done"] is True

    # Later outputs never reopen or overwrite a terminal entry.
    await restarted.record("run-1", failed("late failure"))
    await restarted.record("run-1", Intermediate(value=2))
    log = await repo.get_log("run-1")
    assert log.status == "completed"
    assert log.error_message is None


@pytest.mark.asyncio
async def test_redelivered_run_does_not_refinalize():
    repo = InMemoryRunRepository()
    calls = []

    async def fn(ctx, deps):
        await ctx.step.run("one", lambda: calls.append(1))
        return succeeded()

    engine = WorkflowEngine(
        repository=repo,
        registry=_registry(fn),
        observers=[ExecutionLogMiddleware(repo)],
    )
    event = WorkflowEvent(name="test/log")
    await engine.run(event)
    first = await repo.get_log(event.id)
    await engine.run(event)
    second = await repo.get_log(event.id)

    assert calls == [1]
    assert second.completed_at == first.completed_at
    assert second.duration_ms == first.duration_ms
