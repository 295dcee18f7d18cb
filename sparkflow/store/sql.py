"""SQLModel implementation of the library store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..errors import StoreError
from .models import (
    Automation,
    AutomationAction,
    Book,
    Category,
    Highlight,
    HighlightTag,
    Spark,
    SparkCategory,
    SparkTag,
    Tag,
    TenantSettings,
    as_utc,
)
from .repository import LibraryStore

logger = logging.getLogger(__name__)

_TIMESTAMP_FIELDS = ("updated", "embedding_updated_at")


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(values)
    for key in _TIMESTAMP_FIELDS:
        if key in values:
            values[key] = as_utc(values[key])
    return values


class SqlLibraryStore(LibraryStore):
    """Async SQLAlchemy session helper over the library tables."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session committed on exit; database errors surface as ``StoreError``."""
        async with self.session() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(f"{operation} failed: {exc}")
                raise StoreError(f"{operation} failed: {exc}") from exc

    # settings --------------------------------------------------------
    async def get_settings(self, tenant_id: str) -> Dict[str, Any]:
        async with self.session() as session:
            row = await session.get(TenantSettings, tenant_id)
            return dict(row.settings or {}) if row else {}

    async def save_settings(self, tenant_id: str, settings: Dict[str, Any]) -> None:
        async with self.transaction("save_settings") as session:
            await session.merge(
                TenantSettings(tenant_id=tenant_id, settings=dict(settings))
            )

    async def list_settings_with_scheduled_tasks(self) -> List[Tuple[str, Dict[str, Any]]]:
        async with self.session() as session:
            rows = (await session.exec(select(TenantSettings))).all()
        return [
            (row.tenant_id, dict(row.settings))
            for row in rows
            if row.settings and row.settings.get("scheduledTasks") is not None
        ]

    # books -----------------------------------------------------------
    async def list_books(self, tenant_id: str) -> List[Book]:
        async with self.session() as session:
            result = await session.exec(select(Book).where(Book.tenant_id == tenant_id))
            return list(result.all())

    async def insert_books(self, tenant_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        async with self.transaction("insert_books") as session:
            session.add_all(Book(tenant_id=tenant_id, **_coerce(row)) for row in rows)
        return len(rows)

    async def update_book(self, book_id: str, values: Dict[str, Any]) -> None:
        async with self.transaction("update_book") as session:
            book = await session.get(Book, book_id)
            if book is None:
                raise StoreError(f"book {book_id} not found")
            for key, value in _coerce(values).items():
                setattr(book, key, value)

    # highlights ------------------------------------------------------
    async def list_highlights(self, tenant_id: str) -> List[Highlight]:
        async with self.session() as session:
            result = await session.exec(
                select(Highlight).where(Highlight.tenant_id == tenant_id)
            )
            return list(result.all())

    async def upsert_highlights(
        self, tenant_id: str, rows: Sequence[Dict[str, Any]]
    ) -> int:
        remote_ids = [row["remote_id"] for row in rows]
        async with self.transaction("upsert_highlights") as session:
            result = await session.exec(
                select(Highlight).where(
                    Highlight.tenant_id == tenant_id,
                    Highlight.remote_id.in_(remote_ids),
                )
            )
            existing = {h.remote_id: h for h in result.all()}
            for row in rows:
                values = _coerce(row)
                current = existing.get(values["remote_id"])
                if current is None:
                    current = Highlight(tenant_id=tenant_id, **values)
                    session.add(current)
                    existing[current.remote_id] = current
                else:
                    for key, value in values.items():
                        setattr(current, key, value)
        return len(rows)

    async def list_highlights_without_embeddings(
        self, tenant_id: str, limit: int
    ) -> List[Highlight]:
        async with self.session() as session:
            result = await session.exec(
                select(Highlight)
                .where(
                    Highlight.tenant_id == tenant_id,
                    Highlight.embedding.is_(None),
                    Highlight.text.is_not(None),
                )
                .order_by(Highlight.updated.desc())
                .limit(limit)
            )
            return list(result.all())

    async def set_highlight_embedding(
        self,
        tenant_id: str,
        highlight_id: str,
        embedding: List[float],
        updated_at: datetime,
    ) -> None:
        async with self.transaction("set_highlight_embedding") as session:
            highlight = await session.get(Highlight, highlight_id)
            if highlight is None or highlight.tenant_id != tenant_id:
                raise StoreError(f"highlight {highlight_id} not found")
            highlight.embedding = list(embedding)
            highlight.embedding_updated_at = updated_at

    async def random_highlights(self, tenant_id: str, count: int) -> List[Highlight]:
        async with self.session() as session:
            result = await session.exec(
                select(Highlight)
                .where(Highlight.tenant_id == tenant_id)
                .order_by(func.random())
                .limit(count)
            )
            return list(result.all())

    async def insert_highlight_tags(
        self,
        tenant_id: str,
        pairs: Iterable[Tuple[str, str]],
        source: Optional[str] = None,
    ) -> int:
        pairs = list(dict.fromkeys(pairs))
        if not pairs:
            return 0
        highlight_ids = {highlight_id for highlight_id, _ in pairs}
        async with self.transaction("insert_highlight_tags") as session:
            result = await session.exec(
                select(HighlightTag).where(HighlightTag.highlight_id.in_(highlight_ids))
            )
            existing = {(row.highlight_id, row.tag_id) for row in result.all()}
            new_pairs = [pair for pair in pairs if pair not in existing]
            session.add_all(
                HighlightTag(
                    highlight_id=highlight_id,
                    tag_id=tag_id,
                    tenant_id=tenant_id,
                    source=source,
                )
                for highlight_id, tag_id in new_pairs
            )
        return len(new_pairs)

    # sparks ----------------------------------------------------------
    async def find_spark_uids(self, tenant_id: str, uids: Sequence[str]) -> set[str]:
        if not uids:
            return set()
        async with self.session() as session:
            result = await session.exec(
                select(Spark.uid).where(Spark.tenant_id == tenant_id, Spark.uid.in_(uids))
            )
            return set(result.all())

    async def get_spark_by_uid(self, tenant_id: str, uid: str) -> Optional[Spark]:
        async with self.session() as session:
            result = await session.exec(
                select(Spark).where(Spark.tenant_id == tenant_id, Spark.uid == uid)
            )
            return result.first()

    async def insert_spark(
        self,
        tenant_id: str,
        body: str,
        uid: str,
        todo_id: Optional[str] = None,
        todo_created_at: Optional[str] = None,
    ) -> Spark:
        spark = Spark(
            tenant_id=tenant_id,
            body=body,
            uid=uid,
            todo_id=todo_id,
            todo_created_at=todo_created_at,
        )
        async with self.transaction("insert_spark") as session:
            session.add(spark)
        return spark

    async def link_spark_category(
        self, spark_id: str, category_id: str, created_by: Optional[str] = None
    ) -> None:
        async with self.transaction("link_spark_category") as session:
            await session.merge(
                SparkCategory(
                    spark_id=spark_id, category_id=category_id, created_by=created_by
                )
            )

    async def link_spark_tag(
        self, spark_id: str, tag_id: str, created_by: Optional[str] = None
    ) -> None:
        async with self.transaction("link_spark_tag") as session:
            await session.merge(
                SparkTag(spark_id=spark_id, tag_id=tag_id, created_by=created_by)
            )

    # categories & tags -----------------------------------------------
    async def find_category(
        self, tenant_id: str, slug: Optional[str] = None, name: Optional[str] = None
    ) -> Category | None:
        statement = select(Category).where(Category.tenant_id == tenant_id)
        if slug is not None:
            statement = statement.where(Category.slug == slug)
        if name is not None:
            statement = statement.where(Category.name == name)
        async with self.session() as session:
            return (await session.exec(statement.limit(1))).first()

    async def create_category(self, tenant_id: str, name: str, slug: str) -> Category:
        category = Category(tenant_id=tenant_id, name=name, slug=slug)
        async with self.transaction("create_category") as session:
            session.add(category)
        return category

    async def list_tags(self, tenant_id: str) -> List[Tag]:
        async with self.session() as session:
            result = await session.exec(select(Tag).where(Tag.tenant_id == tenant_id))
            return list(result.all())

    async def find_tag(self, tenant_id: str, name: str) -> Tag | None:
        async with self.session() as session:
            result = await session.exec(
                select(Tag).where(Tag.tenant_id == tenant_id, Tag.name == name).limit(1)
            )
            return result.first()

    async def create_tags(
        self, tenant_id: str, names: Sequence[str], source: Optional[str] = None
    ) -> List[Tag]:
        tags = [Tag(tenant_id=tenant_id, name=name, source=source) for name in names]
        async with self.transaction("create_tags") as session:
            session.add_all(tags)
        return tags

    # automations -----------------------------------------------------
    async def create_automation(
        self,
        tenant_id: str,
        name: str,
        actions: Sequence[Dict[str, Any]],
        source: str = "system",
    ) -> Automation:
        automation = Automation(tenant_id=tenant_id, name=name, source=source)
        async with self.transaction("create_automation") as session:
            session.add(automation)
            session.add_all(
                AutomationAction(automation_id=automation.id, action_data=dict(data))
                for data in actions
            )
        return automation

    async def get_automation(self, automation_id: str) -> Automation | None:
        async with self.session() as session:
            return await session.get(Automation, automation_id)

    async def list_automation_actions(self, automation_id: str) -> List[AutomationAction]:
        async with self.session() as session:
            result = await session.exec(
                select(AutomationAction).where(
                    AutomationAction.automation_id == automation_id
                )
            )
            return list(result.all())
