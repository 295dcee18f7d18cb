"""sparkflow: durable, step-memoized workflows for a personal reading library."""

from .contracts import Intermediate, Terminal, WorkflowEvent, failed, succeeded
from .dispatch import EventDispatcher
from .execute import WorkflowExecutor
from .logs import ExecutionLogMiddleware
from .persistence import get_repository
from .runtime import ExecutionContext, WorkflowEngine
from .store import get_library_store
from .transports import get_transport
from .workflows import REGISTRY, load_workflows, workflow

__version__ = "0.1.0"
__all__ = [
    "ExecutionContext",
    "ExecutionLogMiddleware",
    "EventDispatcher",
    "Intermediate",
    "REGISTRY",
    "Terminal",
    "WorkflowEngine",
    "WorkflowEvent",
    "WorkflowExecutor",
    "failed",
    "get_library_store",
    "get_repository",
    "get_transport",
    "load_workflows",
    "succeeded",
    "workflow",
]
