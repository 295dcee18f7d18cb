"""Workflow definitions. Call ``load_workflows()`` to register the built-ins."""

from .registry import (
    REGISTRY,
    WorkflowDefinition,
    get_workflow,
    get_workflow_by_id,
    load_workflows,
    workflow,
)

__all__ = [
    "REGISTRY",
    "WorkflowDefinition",
    "get_workflow",
    "get_workflow_by_id",
    "load_workflows",
    "workflow",
]
