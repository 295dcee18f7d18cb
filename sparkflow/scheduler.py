"""Recurring task scheduling.

Tenants subscribe to tasks in ``settings["scheduledTasks"]``::

    {"readwise-highlights-sync": {"enabled": true, "frequency": "daily",
                                  "lastRun": "2024-05-01T10:00:00+00:00"}}

An hourly tick dispatches the event of every due subscription and records
``lastRun`` once the dispatch succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .dispatch import EventSender
from .store import LibraryStore
from .store.models import as_utc
from .workflows.deps import integration_settings

logger = logging.getLogger(__name__)

TICK_EVENT = "scheduler/tick"

FREQUENCY_HOURS: Dict[str, float] = {
    "hourly": 1,
    "daily": 23,
    "weekly": 7 * 24,
    "monthly": 30 * 24,
}


class ScheduledTask(str, Enum):
    """Tasks a tenant can schedule, keyed by their settings id."""

    AIRTABLE_IMPORT_SPARKS = "airtable-import-sparks"
    READWISE_BOOKS_IMPORT = "readwise-books-import"
    READWISE_HIGHLIGHTS_SYNC = "readwise-highlights-sync"

    @property
    def event_name(self) -> str:
        return _EVENT_NAMES[self]

    @property
    def integration(self) -> str:
        if self is ScheduledTask.AIRTABLE_IMPORT_SPARKS:
            return "airtable"
        return "readwise"

    def build_payload(self, tenant_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Event data for the workflow behind this task."""
        creds = integration_settings(settings, self.integration)
        payload = {"tenant_id": tenant_id, "api_key": creds.get("apiKey")}
        if self is ScheduledTask.AIRTABLE_IMPORT_SPARKS:
            payload["base_id"] = creds.get("baseId")
            payload["table_id"] = creds.get("tableId")
        return payload

    def validate_settings(self, settings: Dict[str, Any]) -> bool:
        """True when the tenant has the credentials this task needs."""
        creds = integration_settings(settings, self.integration)
        required = ["apiKey"]
        if self is ScheduledTask.AIRTABLE_IMPORT_SPARKS:
            required += ["baseId", "tableId"]
        return all(creds.get(key) for key in required)


_EVENT_NAMES = {
    ScheduledTask.AIRTABLE_IMPORT_SPARKS: "airtable/import-sparks",
    ScheduledTask.READWISE_BOOKS_IMPORT: "readwise/sync-books",
    ScheduledTask.READWISE_HIGHLIGHTS_SYNC: "readwise/sync-highlights",
}


def is_due(subscription: Dict[str, Any], now: datetime) -> bool:
    """Decide whether a subscription should run at ``now``.

    A subscription that never ran is due. Unknown frequencies and ``off`` are
    never due.
    """
    frequency = subscription.get("frequency")
    if frequency == "off":
        return False
    threshold = FREQUENCY_HOURS.get(frequency)
    if threshold is None:
        logger.warning(f"Unknown frequency: {frequency}")
        return False
    last_run = as_utc(subscription.get("lastRun"))
    if last_run is None:
        return True
    hours_since = (as_utc(now) - last_run).total_seconds() / 3600
    return hours_since >= threshold


async def run_scheduled_tasks(
    store: LibraryStore,
    dispatcher: EventSender,
    now: datetime,
    tenants: Optional[Sequence[Tuple[str, Dict[str, Any]]]] = None,
) -> Dict[str, Any]:
    """Dispatch every due subscription and record its ``lastRun``.

    ``lastRun`` is only written after the event was sent, so a failed
    dispatch is retried on the next tick.
    """
    if tenants is None:
        tenants = await store.list_settings_with_scheduled_tasks()

    triggered = skipped = 0
    triggered_tasks: List[Dict[str, str]] = []
    for tenant_id, settings in tenants:
        subscriptions = dict(settings.get("scheduledTasks") or {})
        for task_id, subscription in list(subscriptions.items()):
            if not subscription.get("enabled") or subscription.get("frequency") == "off":
                continue
            try:
                task = ScheduledTask(task_id)
            except ValueError:
                logger.warning(f"No configuration found for task: {task_id}")
                continue
            if not task.validate_settings(settings):
                logger.debug(
                    f"Skipping task {task_id} for tenant {tenant_id}: missing required settings"
                )
                skipped += 1
                continue
            if not is_due(subscription, now):
                logger.debug(
                    f"Skipped task {task_id} for tenant {tenant_id}: not due yet "
                    f"(last run: {subscription.get('lastRun')})"
                )
                skipped += 1
                continue

            try:
                await dispatcher.send(task.event_name, task.build_payload(tenant_id, settings))
                subscriptions[task_id] = {**subscription, "lastRun": now.isoformat()}
                settings = {**settings, "scheduledTasks": subscriptions}
                await store.save_settings(tenant_id, settings)
            except Exception as exc:
                logger.error(f"Error triggering task {task_id} for tenant {tenant_id}: {exc}")
                continue
            triggered += 1
            triggered_tasks.append({"tenant_id": tenant_id, "task_id": task_id})
            logger.info(f"Triggered task {task_id} for tenant {tenant_id}")

    summary = {
        "total_tenants": len(tenants),
        "triggered": triggered,
        "skipped": skipped,
        "triggered_tasks": triggered_tasks,
    }
    logger.info(
        f"Scheduled tasks check completed: {len(tenants)} tenants, "
        f"{triggered} triggered, {skipped} skipped"
    )
    return summary


class Scheduler:
    """Send the ``scheduler/tick`` event on a fixed interval."""

    def __init__(
        self,
        dispatcher: EventSender,
        interval: float = 3600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatcher = dispatcher
        self.interval = interval
        self._sleep = sleep

    async def tick(self) -> str:
        return await self.dispatcher.send(TICK_EVENT, {})

    async def run_forever(
        self, interval: Optional[float] = None, iterations: Optional[int] = None
    ) -> None:
        """Tick every ``interval`` seconds. ``iterations`` bounds the loop."""
        interval = interval or self.interval
        count = 0
        while iterations is None or count < iterations:
            try:
                event_id = await self.tick()
                logger.info(f"Scheduler tick dispatched ({event_id})")
            except Exception as exc:
                logger.error(f"Scheduler tick failed: {exc}")
            count += 1
            if iterations is None or count < iterations:
                await self._sleep(interval)
