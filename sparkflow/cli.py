"""Command line interface for running sparkflow workers and inspecting runs."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import typer

from .config import SparkflowConfig, load_config
from .contracts import Terminal, WorkflowOutcome
from .dispatch import EventDispatcher
from .execute import WorkflowExecutor
from .logs import ExecutionLogMiddleware
from .persistence import get_repository
from .runtime import WorkflowEngine
from .scheduler import Scheduler, run_scheduled_tasks
from .store import LibraryStore, SqlLibraryStore, get_library_store
from .transports import BaseTransport, get_transport
from .workflows import load_workflows
from .workflows.deps import WorkflowDeps, build_deps

app = typer.Typer(help="CLI for sparkflow workflows")

worker_app = typer.Typer(help="Run workflow workers")
events_app = typer.Typer(help="Publish events")
scheduler_app = typer.Typer(help="Recurring task scheduler")
logs_app = typer.Typer(help="Inspect the execution log")
runs_app = typer.Typer(help="Manage workflow runs")
workflows_app = typer.Typer(help="Inspect registered workflows")

app.add_typer(worker_app, name="worker")
app.add_typer(events_app, name="events")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(logs_app, name="logs")
app.add_typer(runs_app, name="runs")
app.add_typer(workflows_app, name="workflows")


@dataclass
class Runtime:
    config: SparkflowConfig
    transport: BaseTransport
    dispatcher: EventDispatcher
    store: LibraryStore
    deps: WorkflowDeps
    engine: WorkflowEngine


async def build_runtime(config: Optional[SparkflowConfig] = None) -> Runtime:
    """Wire transport, stores, workflow dependencies and the engine."""
    config = config or load_config()
    load_workflows()
    transport = get_transport(config=config)
    dispatcher = EventDispatcher(transport)
    store = get_library_store(config=config)
    if isinstance(store, SqlLibraryStore):
        await store.init_db()
    repository = get_repository(config=config)
    deps = build_deps(config, store, dispatcher)
    engine = WorkflowEngine(
        repository=repository,
        deps=deps,
        observers=[ExecutionLogMiddleware(repository)],
    )
    return Runtime(config, transport, dispatcher, store, deps, engine)


def _echo_outcome(outcome: WorkflowOutcome) -> None:
    if isinstance(outcome, Terminal):
        typer.echo(json.dumps(outcome.payload, indent=2, default=str))
    else:
        typer.echo(f"Run paused after step {outcome.step_name}")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """sparkflow CLI entry point."""
    level = log_level or load_config().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@worker_app.command("run")
def worker_run(lifespan: Optional[float] = None) -> None:
    """
    Run a worker that executes workflows for incoming events.

    The worker subscribes to every registered event name on the configured
    transport.

    Example:
        sparkflow worker run
        sparkflow worker run --lifespan 300
    """

    async def _run() -> None:
        runtime = await build_runtime()
        executor = WorkflowExecutor(runtime.transport, runtime.engine)
        typer.echo(f"Starting worker for {len(executor.topics)} events")
        async with runtime.transport:
            await executor.start(lifespan=lifespan)

    asyncio.run(_run())


@events_app.command("send")
def events_send(
    name: str,
    data: str = typer.Option("{}", help="Event payload as a JSON object"),
) -> None:
    """
    Publish an event.

    Example:
        sparkflow events send readwise/sync-highlights --data '{"tenant_id": "t1", "api_key": "..."}'
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _send() -> str:
        async with get_transport(config=load_config()) as transport:
            return await EventDispatcher(transport).send(name, payload)

    typer.echo(asyncio.run(_send()))


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Dispatch every due scheduled task once and print the summary."""

    async def _tick() -> dict:
        runtime = await build_runtime()
        return await run_scheduled_tasks(
            runtime.store, runtime.dispatcher, runtime.deps.now()
        )

    typer.echo(json.dumps(asyncio.run(_tick()), indent=2))


@scheduler_app.command("run")
def scheduler_run(interval: Optional[float] = None) -> None:
    """Send the scheduler tick event on a fixed interval."""

    async def _run() -> None:
        config = load_config()
        async with get_transport(config=config) as transport:
            scheduler = Scheduler(
                EventDispatcher(transport), interval=config.scheduler.interval
            )
            await scheduler.run_forever(interval)

    asyncio.run(_run())


@logs_app.command("list")
def logs_list(
    tenant: Optional[str] = None,
    status: Optional[str] = None,
    workflow: Optional[str] = None,
    limit: int = 50,
) -> None:
    """
    List execution log entries, newest first.

    Example:
        sparkflow logs list --tenant t1 --status failed
        # Output: 2f1c...    readwise-sync-highlights    failed    2024-05-01 10:00:00
    """
    repo = get_repository()
    entries = asyncio.run(
        repo.list_logs(
            tenant_id=tenant, status=status, workflow_name=workflow, limit=limit
        )
    )
    if not entries:
        typer.echo("No runs found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.run_id}\t{entry.workflow_id}\t{entry.status}\t{entry.started_at}"
        )


@logs_app.command("show")
def logs_show(run_id: str) -> None:
    """Show the execution log entry and stored steps of a run."""
    repo = get_repository()

    async def _load():
        return await repo.get_log(run_id), await repo.load_steps(run_id)

    entry, steps = asyncio.run(_load())
    if entry is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {entry.run_id} ({entry.workflow_name}): {entry.status}")
    if entry.duration_ms is not None:
        typer.echo(f"Duration: {entry.duration_ms} ms")
    if entry.error_message:
        typer.echo(f"Error: {entry.error_message}")
    if entry.result_data is not None:
        typer.echo(f"Result: {json.dumps(entry.result_data, default=str)}")
    for step in steps.values():
        typer.echo(f"- {step.step_name}: {step.status} (attempts {step.attempts})")


@runs_app.command("resume")
def runs_resume(run_id: str) -> None:
    """Re-enter a run, replaying its succeeded steps."""

    async def _resume() -> WorkflowOutcome:
        runtime = await build_runtime()
        return await runtime.engine.resume(run_id)

    _echo_outcome(asyncio.run(_resume()))


@workflows_app.command("list")
def workflows_list() -> None:
    """List registered workflows and the events they handle."""
    registry = load_workflows()
    for event_name, definition in sorted(registry.items()):
        trigger = f"cron {definition.cron}" if definition.cron else "event"
        typer.echo(f"{definition.id}\t{event_name}\t{trigger}")


if __name__ == "__main__":
    app()
