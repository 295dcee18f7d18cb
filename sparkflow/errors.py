"""Exception types raised across sparkflow."""

from __future__ import annotations

from typing import Optional


class SparkflowError(Exception):
    """Base class for all sparkflow errors."""


class ConfigurationError(SparkflowError):
    """Required configuration or credentials are missing."""


class UnknownEventError(SparkflowError):
    """No workflow is subscribed to the received event name."""

    def __init__(self, event_name: str) -> None:
        super().__init__(f"No workflow registered for event '{event_name}'")
        self.event_name = event_name


class StepFailed(SparkflowError):
    """A step body raised; prior succeeded steps stay memoized."""

    def __init__(self, step_name: str, cause: BaseException) -> None:
        super().__init__(f"Step '{step_name}' failed: {cause}")
        self.step_name = step_name
        self.cause = cause


class StepInProgress(SparkflowError):
    """Another invocation currently holds the claim on this step."""

    def __init__(self, run_id: str, step_name: str) -> None:
        super().__init__(f"Step '{step_name}' of run {run_id} is already running")
        self.run_id = run_id
        self.step_name = step_name


class DuplicateStepError(SparkflowError):
    """A step name was used twice within one workflow invocation."""


class ReadwiseAPIError(SparkflowError):
    """Non-2xx, non-429 response from the Readwise API."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Readwise API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class AirtableAPIError(SparkflowError):
    """Non-2xx response from the Airtable API."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Airtable API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class EmbeddingError(SparkflowError):
    """The embedding provider returned an unusable response."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class StoreError(SparkflowError):
    """A write or read against the domain store failed."""
