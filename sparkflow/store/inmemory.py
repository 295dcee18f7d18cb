"""In-memory implementation of the library store."""

from __future__ import annotations

import copy
import random
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import StoreError
from .models import (
    Automation,
    AutomationAction,
    Book,
    Category,
    Highlight,
    Spark,
    Tag,
    as_utc,
)
from .repository import LibraryStore

_TIMESTAMP_FIELDS = ("updated", "embedding_updated_at")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(values)
    for key in _TIMESTAMP_FIELDS:
        if key in values:
            values[key] = as_utc(values[key])
    return values


class InMemoryLibraryStore(LibraryStore):
    """Keep the tenant library in local memory. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.settings: Dict[str, Dict[str, Any]] = {}
        self.books: Dict[str, Book] = {}
        self.highlights: Dict[str, Highlight] = {}
        self.sparks: Dict[str, Spark] = {}
        self.categories: Dict[str, Category] = {}
        self.tags: Dict[str, Tag] = {}
        self.spark_categories: set[Tuple[str, str]] = set()
        self.spark_tags: set[Tuple[str, str]] = set()
        self.highlight_tags: Dict[Tuple[str, str], Optional[str]] = {}
        self.automations: Dict[str, Automation] = {}
        self.automation_actions: Dict[str, AutomationAction] = {}
        # Names of batch operations that should raise, for failure tests.
        self.fail_on: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(f"{operation} failed")

    # settings --------------------------------------------------------
    async def get_settings(self, tenant_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self.settings.get(tenant_id, {}))

    async def save_settings(self, tenant_id: str, settings: Dict[str, Any]) -> None:
        self._check("save_settings")
        self.settings[tenant_id] = copy.deepcopy(settings)

    async def list_settings_with_scheduled_tasks(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (tenant_id, copy.deepcopy(settings))
            for tenant_id, settings in self.settings.items()
            if settings.get("scheduledTasks") is not None
        ]

    # books -----------------------------------------------------------
    async def list_books(self, tenant_id: str) -> List[Book]:
        return [b for b in self.books.values() if b.tenant_id == tenant_id]

    async def insert_books(self, tenant_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        self._check("insert_books")
        existing = {b.remote_id for b in await self.list_books(tenant_id)}
        if any(row["remote_id"] in existing for row in rows):
            raise StoreError("duplicate book remote_id")
        for row in rows:
            book = Book(tenant_id=tenant_id, **_coerce(row))
            self.books[book.id] = book
        return len(rows)

    async def update_book(self, book_id: str, values: Dict[str, Any]) -> None:
        self._check("update_book")
        book = self.books.get(book_id)
        if book is None:
            raise StoreError(f"book {book_id} not found")
        for key, value in _coerce(values).items():
            setattr(book, key, value)

    # highlights ------------------------------------------------------
    async def list_highlights(self, tenant_id: str) -> List[Highlight]:
        return [h for h in self.highlights.values() if h.tenant_id == tenant_id]

    async def upsert_highlights(
        self, tenant_id: str, rows: Sequence[Dict[str, Any]]
    ) -> int:
        self._check("upsert_highlights")
        by_remote = {h.remote_id: h for h in await self.list_highlights(tenant_id)}
        for row in rows:
            values = _coerce(row)
            current = by_remote.get(values["remote_id"])
            if current is None:
                highlight = Highlight(tenant_id=tenant_id, **values)
                self.highlights[highlight.id] = highlight
                by_remote[highlight.remote_id] = highlight
            else:
                for key, value in values.items():
                    setattr(current, key, value)
        return len(rows)

    async def list_highlights_without_embeddings(
        self, tenant_id: str, limit: int
    ) -> List[Highlight]:
        candidates = [
            h
            for h in await self.list_highlights(tenant_id)
            if h.embedding is None and h.text
        ]
        candidates.sort(key=lambda h: as_utc(h.updated) or _EPOCH, reverse=True)
        return candidates[:limit]

    async def set_highlight_embedding(
        self,
        tenant_id: str,
        highlight_id: str,
        embedding: List[float],
        updated_at: datetime,
    ) -> None:
        self._check("set_highlight_embedding")
        highlight = self.highlights.get(highlight_id)
        if highlight is None or highlight.tenant_id != tenant_id:
            raise StoreError(f"highlight {highlight_id} not found")
        highlight.embedding = list(embedding)
        highlight.embedding_updated_at = updated_at

    async def random_highlights(self, tenant_id: str, count: int) -> List[Highlight]:
        highlights = await self.list_highlights(tenant_id)
        return random.sample(highlights, min(count, len(highlights)))

    async def insert_highlight_tags(
        self,
        tenant_id: str,
        pairs: Iterable[Tuple[str, str]],
        source: Optional[str] = None,
    ) -> int:
        self._check("insert_highlight_tags")
        inserted = 0
        for pair in pairs:
            if pair in self.highlight_tags:
                continue
            self.highlight_tags[pair] = source
            inserted += 1
        return inserted

    # sparks ----------------------------------------------------------
    async def find_spark_uids(self, tenant_id: str, uids: Sequence[str]) -> set[str]:
        wanted = set(uids)
        return {
            s.uid
            for s in self.sparks.values()
            if s.tenant_id == tenant_id and s.uid in wanted
        }

    async def get_spark_by_uid(self, tenant_id: str, uid: str) -> Optional[Spark]:
        return next(
            (s for s in self.sparks.values() if s.tenant_id == tenant_id and s.uid == uid),
            None,
        )

    async def insert_spark(
        self,
        tenant_id: str,
        body: str,
        uid: str,
        todo_id: Optional[str] = None,
        todo_created_at: Optional[str] = None,
    ) -> Spark:
        self._check("insert_spark")
        if await self.find_spark_uids(tenant_id, [uid]):
            raise StoreError(f"spark {uid} already exists")
        spark = Spark(
            tenant_id=tenant_id,
            body=body,
            uid=uid,
            todo_id=todo_id,
            todo_created_at=todo_created_at,
        )
        self.sparks[spark.id] = spark
        return spark

    async def link_spark_category(
        self, spark_id: str, category_id: str, created_by: Optional[str] = None
    ) -> None:
        self.spark_categories.add((spark_id, category_id))

    async def link_spark_tag(
        self, spark_id: str, tag_id: str, created_by: Optional[str] = None
    ) -> None:
        self.spark_tags.add((spark_id, tag_id))

    # categories & tags -----------------------------------------------
    async def find_category(
        self, tenant_id: str, slug: Optional[str] = None, name: Optional[str] = None
    ) -> Category | None:
        for category in self.categories.values():
            if category.tenant_id != tenant_id:
                continue
            if slug is not None and category.slug != slug:
                continue
            if name is not None and category.name != name:
                continue
            return category
        return None

    async def create_category(self, tenant_id: str, name: str, slug: str) -> Category:
        self._check("create_category")
        if await self.find_category(tenant_id, slug=slug):
            raise StoreError(f"category {slug} already exists")
        category = Category(tenant_id=tenant_id, name=name, slug=slug)
        self.categories[category.id] = category
        return category

    async def list_tags(self, tenant_id: str) -> List[Tag]:
        return [t for t in self.tags.values() if t.tenant_id == tenant_id]

    async def find_tag(self, tenant_id: str, name: str) -> Tag | None:
        return next(
            (t for t in self.tags.values() if t.tenant_id == tenant_id and t.name == name),
            None,
        )

    async def create_tags(
        self, tenant_id: str, names: Sequence[str], source: Optional[str] = None
    ) -> List[Tag]:
        self._check("create_tags")
        created = []
        for name in names:
            tag = Tag(tenant_id=tenant_id, name=name, source=source)
            self.tags[tag.id] = tag
            created.append(tag)
        return created

    # automations -----------------------------------------------------
    async def create_automation(
        self,
        tenant_id: str,
        name: str,
        actions: Sequence[Dict[str, Any]],
        source: str = "system",
    ) -> Automation:
        self._check("create_automation")
        automation = Automation(tenant_id=tenant_id, name=name, source=source)
        self.automations[automation.id] = automation
        for action_data in actions:
            action = AutomationAction(
                automation_id=automation.id, action_data=dict(action_data)
            )
            self.automation_actions[action.id] = action
        return automation

    async def get_automation(self, automation_id: str) -> Automation | None:
        return self.automations.get(automation_id)

    async def list_automation_actions(self, automation_id: str) -> List[AutomationAction]:
        return [
            a for a in self.automation_actions.values() if a.automation_id == automation_id
        ]
