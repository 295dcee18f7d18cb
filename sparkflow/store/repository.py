"""Domain store abstraction used by workflow steps."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import Automation, AutomationAction, Book, Category, Highlight, Spark, Tag


class LibraryStore(Protocol):
    """Protocol for the tenant library: settings, books, highlights, sparks,
    categories, tags and automations.

    Batch writes (``insert_books``, ``upsert_highlights``) are all-or-nothing
    per call and raise ``StoreError`` on failure so callers can count failed
    batches.
    """

    # settings --------------------------------------------------------
    async def get_settings(self, tenant_id: str) -> Dict[str, Any]:
        """Return the tenant settings document (empty when absent)."""

    async def save_settings(self, tenant_id: str, settings: Dict[str, Any]) -> None:
        """Replace the tenant settings document."""

    async def list_settings_with_scheduled_tasks(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Return ``(tenant_id, settings)`` for tenants with ``scheduledTasks``."""

    # books -----------------------------------------------------------
    async def list_books(self, tenant_id: str) -> List[Book]: ...

    async def insert_books(self, tenant_id: str, rows: Sequence[Dict[str, Any]]) -> int: ...

    async def update_book(self, book_id: str, values: Dict[str, Any]) -> None: ...

    # highlights ------------------------------------------------------
    async def list_highlights(self, tenant_id: str) -> List[Highlight]: ...

    async def upsert_highlights(
        self, tenant_id: str, rows: Sequence[Dict[str, Any]]
    ) -> int:
        """Insert or update highlights keyed by ``(tenant_id, remote_id)``."""

    async def list_highlights_without_embeddings(
        self, tenant_id: str, limit: int
    ) -> List[Highlight]:
        """Highlights with text and no embedding, most recently updated first."""

    async def set_highlight_embedding(
        self,
        tenant_id: str,
        highlight_id: str,
        embedding: List[float],
        updated_at: datetime,
    ) -> None: ...

    async def random_highlights(self, tenant_id: str, count: int) -> List[Highlight]: ...

    async def insert_highlight_tags(
        self,
        tenant_id: str,
        pairs: Iterable[Tuple[str, str]],
        source: Optional[str] = None,
    ) -> int:
        """Link ``(highlight_id, tag_id)`` pairs, ignoring existing links.

        Returns the number of new links.
        """

    # sparks ----------------------------------------------------------
    async def find_spark_uids(self, tenant_id: str, uids: Sequence[str]) -> set[str]: ...

    async def get_spark_by_uid(self, tenant_id: str, uid: str) -> Optional[Spark]: ...

    async def insert_spark(
        self,
        tenant_id: str,
        body: str,
        uid: str,
        todo_id: Optional[str] = None,
        todo_created_at: Optional[str] = None,
    ) -> Spark: ...

    async def link_spark_category(
        self, spark_id: str, category_id: str, created_by: Optional[str] = None
    ) -> None: ...

    async def link_spark_tag(
        self, spark_id: str, tag_id: str, created_by: Optional[str] = None
    ) -> None: ...

    # categories & tags -----------------------------------------------
    async def find_category(
        self, tenant_id: str, slug: Optional[str] = None, name: Optional[str] = None
    ) -> Category | None: ...

    async def create_category(self, tenant_id: str, name: str, slug: str) -> Category: ...

    async def list_tags(self, tenant_id: str) -> List[Tag]: ...

    async def find_tag(self, tenant_id: str, name: str) -> Tag | None: ...

    async def create_tags(
        self, tenant_id: str, names: Sequence[str], source: Optional[str] = None
    ) -> List[Tag]: ...

    # automations -----------------------------------------------------
    async def create_automation(
        self,
        tenant_id: str,
        name: str,
        actions: Sequence[Dict[str, Any]],
        source: str = "system",
    ) -> Automation:
        """Persist an automation together with its actions in one transaction."""

    async def get_automation(self, automation_id: str) -> Automation | None: ...

    async def list_automation_actions(self, automation_id: str) -> List[AutomationAction]: ...
