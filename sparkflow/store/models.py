from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TenantSettings(SQLModel, table=True):
    """Per-tenant settings document holding ``integrations`` and ``scheduledTasks``."""

    __tablename__ = "user_settings"

    tenant_id: str = Field(primary_key=True)
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(
        default_factory=_now, sa_column=Column(DateTime(timezone=True))
    )


class Book(SQLModel, table=True):
    __tablename__ = "books"
    __table_args__ = (UniqueConstraint("tenant_id", "remote_id"),)

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    remote_id: int
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    num_highlights: Optional[int] = None
    last_highlight_at: Optional[str] = None
    updated: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    cover_image_url: Optional[str] = None
    highlights_url: Optional[str] = None
    source_url: Optional[str] = None
    asin: Optional[str] = None
    tags: list = Field(default_factory=list, sa_column=Column(JSON))
    document_note: Optional[str] = None


class Highlight(SQLModel, table=True):
    __tablename__ = "highlights"
    __table_args__ = (UniqueConstraint("tenant_id", "remote_id"),)

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    book_id: Optional[str] = Field(default=None, foreign_key="books.id")
    remote_id: int
    text: Optional[str] = None
    note: Optional[str] = None
    location: Optional[int] = None
    location_type: Optional[str] = None
    highlighted_at: Optional[str] = None
    updated: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    remote_book_id: Optional[int] = None
    url: Optional[str] = None
    color: Optional[str] = None
    tags: list = Field(default_factory=list, sa_column=Column(JSON))
    embedding: Optional[list] = Field(
        default=None, sa_column=Column(JSON(none_as_null=True))
    )
    embedding_updated_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class Spark(SQLModel, table=True):
    __tablename__ = "sparks"
    __table_args__ = (UniqueConstraint("tenant_id", "uid"),)

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    body: str
    uid: str
    todo_id: Optional[str] = None
    todo_created_at: Optional[str] = None


class Category(SQLModel, table=True):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("tenant_id", "slug"),)

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    slug: str


class Tag(SQLModel, table=True):
    __tablename__ = "tags"

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    source: Optional[str] = None


class SparkCategory(SQLModel, table=True):
    __tablename__ = "spark_categories"

    spark_id: str = Field(foreign_key="sparks.id", primary_key=True)
    category_id: str = Field(foreign_key="categories.id", primary_key=True)
    created_by: Optional[str] = None


class SparkTag(SQLModel, table=True):
    __tablename__ = "spark_tags"

    spark_id: str = Field(foreign_key="sparks.id", primary_key=True)
    tag_id: str = Field(foreign_key="tags.id", primary_key=True)
    created_by: Optional[str] = None


class HighlightTag(SQLModel, table=True):
    __tablename__ = "highlight_tags"

    highlight_id: str = Field(foreign_key="highlights.id", primary_key=True)
    tag_id: str = Field(foreign_key="tags.id", primary_key=True)
    tenant_id: str
    source: Optional[str] = None


class Automation(SQLModel, table=True):
    """A proposed batch of categorization changes awaiting review."""

    __tablename__ = "automations"

    id: str = Field(default_factory=_id, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    source: str = "system"
    status: str = "pending"
    created_at: datetime = Field(
        default_factory=_now, sa_column=Column(DateTime(timezone=True))
    )


class AutomationAction(SQLModel, table=True):
    __tablename__ = "automation_actions"

    id: str = Field(default_factory=_id, primary_key=True)
    automation_id: str = Field(foreign_key="automations.id", index=True)
    action_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = "pending"


def as_utc(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
