from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed
from ..runtime import ExecutionContext
from ..scheduler import TICK_EVENT, run_scheduled_tasks
from .deps import WorkflowDeps
from .registry import workflow


@workflow(
    "scheduled-tasks-cron",
    TICK_EVENT,
    name="Scheduled Tasks Cron",
    cron="0 * * * *",
)
async def scheduled_tasks_cron(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    """Trigger the recurring tasks every tenant subscribed to."""
    if deps.dispatcher is None:
        return failed("No event dispatcher configured", triggeredTasks=0)

    async def get_tenants() -> List[Any]:
        tenants = await deps.store.list_settings_with_scheduled_tasks()
        ctx.logger.info(f"Found {len(tenants)} tenants with scheduled tasks configured")
        return [[tenant_id, settings] for tenant_id, settings in tenants]

    async def trigger() -> Dict[str, Any]:
        return await run_scheduled_tasks(
            deps.store, deps.dispatcher, deps.now(), tenants=tenants
        )

    try:
        tenants = await ctx.step.run("get-tenants-with-scheduled-tasks", get_tenants)
        if not tenants:
            return succeeded(
                triggeredTasks=0, skippedTasks=0, message="No tenants with scheduled tasks"
            )
        summary = await ctx.step.run("trigger-scheduled-tasks", trigger)
    except StepFailed as exc:
        return failed(exc.cause, triggeredTasks=0)

    return succeeded(
        totalTenants=summary["total_tenants"],
        triggeredTasks=summary["triggered"],
        skippedTasks=summary["skipped"],
        triggeredTaskDetails=summary["triggered_tasks"],
    )
