"""Small shared helpers."""

from .batching import chunked
from .retry import compute_backoff, schedule_retry

__all__ = ["chunked", "compute_backoff", "schedule_retry"]
