"""Dependencies handed to every workflow function."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..clients import AirtableClient, EmbeddingProvider, ReadwiseClient
from ..config import SparkflowConfig
from ..dispatch import EventSender
from ..store import LibraryStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def integration_settings(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return ``settings["integrations"][name]`` or an empty dict."""
    integrations = settings.get("integrations") or {}
    return dict(integrations.get(name) or {})


@dataclass
class WorkflowDeps:
    """Collaborators shared by workflow runs.

    Attributes:
        store: Tenant library storage.
        readwise: Throttled Readwise client; one instance per process so all
            runs share its rate limit state.
        airtable: Airtable client.
        embeddings: Embedding provider.
        dispatcher: Sender used by the scheduler to start other workflows.
        config: Loaded configuration.
        clock: Current time source.
    """

    store: LibraryStore
    readwise: ReadwiseClient
    airtable: AirtableClient
    embeddings: EmbeddingProvider
    dispatcher: Optional[EventSender] = None
    config: SparkflowConfig = field(default_factory=SparkflowConfig)
    clock: Callable[[], datetime] = _utcnow

    def now(self) -> datetime:
        return self.clock()

    async def update_integration(
        self, tenant_id: str, name: str, **values: Any
    ) -> Dict[str, Any]:
        """Merge ``values`` into ``settings["integrations"][name]`` and save."""
        settings = await self.store.get_settings(tenant_id)
        integrations = dict(settings.get("integrations") or {})
        current = dict(integrations.get(name) or {})
        current.update(values)
        integrations[name] = current
        settings["integrations"] = integrations
        await self.store.save_settings(tenant_id, settings)
        return current


def build_deps(
    config: SparkflowConfig,
    store: LibraryStore,
    dispatcher: Optional[EventSender] = None,
) -> WorkflowDeps:
    """Create workflow dependencies from configuration."""
    return WorkflowDeps(
        store=store,
        readwise=ReadwiseClient(config.readwise),
        airtable=AirtableClient(config.airtable),
        embeddings=EmbeddingProvider(config.embeddings),
        dispatcher=dispatcher,
        config=config,
    )
