"""Registry of workflow definitions keyed by the event they subscribe to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import UnknownEventError

WorkflowFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class WorkflowDefinition:
    """A registered workflow function and its trigger."""

    id: str
    event: str
    name: str
    fn: WorkflowFn
    cron: Optional[str] = None


# Exactly one workflow per event name. Populated at import time by the
# ``@workflow`` decorator in the modules listed in ``load_workflows``.
REGISTRY: Dict[str, WorkflowDefinition] = {}


def workflow(
    id: str, event: str, name: Optional[str] = None, cron: Optional[str] = None
) -> Callable[[WorkflowFn], WorkflowFn]:
    """Register ``fn`` as the handler of ``event``."""

    def decorator(fn: WorkflowFn) -> WorkflowFn:
        existing = REGISTRY.get(event)
        if existing is not None and existing.fn is not fn:
            raise ValueError(
                f"Event '{event}' is already handled by workflow '{existing.id}'"
            )
        REGISTRY[event] = WorkflowDefinition(
            id=id, event=event, name=name or id, fn=fn, cron=cron
        )
        return fn

    return decorator


def get_workflow(event_name: str) -> WorkflowDefinition:
    try:
        return REGISTRY[event_name]
    except KeyError:
        raise UnknownEventError(event_name) from None


def get_workflow_by_id(workflow_id: str) -> WorkflowDefinition | None:
    return next((d for d in REGISTRY.values() if d.id == workflow_id), None)


def load_workflows() -> Dict[str, WorkflowDefinition]:
    """Import the built-in workflow modules so they register themselves."""
    from . import airtable, automations, embeddings, readwise, scheduled, tags  # noqa: F401

    return REGISTRY
