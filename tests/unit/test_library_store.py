"""Library store tests run against the in-memory and SQLModel backends."""

from datetime import datetime, timezone

import pytest

from sparkflow.errors import StoreError
from sparkflow.store import InMemoryLibraryStore, SqlLibraryStore
from sparkflow.store.models import as_utc


async def _make_store(kind, tmp_path):
    if kind == "memory":
        return InMemoryLibraryStore()
    store = SqlLibraryStore(f"sqlite+aiosqlite:///{tmp_path / 'library.db'}")
    await store.init_db()
    return store


BACKENDS = pytest.mark.parametrize("kind", ["memory", "sql"])


def _book(remote_id, updated="2024-01-01T00:00:00Z"):
    return {"remote_id": remote_id, "title": f"Book {remote_id}", "updated": updated, "tags": []}


@BACKENDS
@pytest.mark.asyncio
async def test_settings_roundtrip(kind, tmp_path):
    store = await _make_store(kind, tmp_path)
    assert await store.get_settings("t1") == {}

    await store.save_settings("t1", {"integrations": {"readwise": {"apiKey": "k"}}})
    await store.save_settings("t2", {"scheduledTasks": {}})
    await store.save_settings("t2", {"scheduledTasks": {"x": {"enabled": True}}})

    assert (await store.get_settings("t1"))["integrations"]["readwise"]["apiKey"] == "k"
    scheduled = await store.list_settings_with_scheduled_tasks()
    assert [tenant for tenant, _ in scheduled] == ["t2"]
    assert scheduled[0][1]["scheduledTasks"] == {"x": {"enabled": True}}


@BACKENDS
@pytest.mark.asyncio
async def test_books_insert_and_update(kind, tmp_path):
    store = await _make_store(kind, tmp_path)
    assert await store.insert_books("t1", [_book(1), _book(2)]) == 2

    with pytest.raises(StoreError):
        await store.insert_books("t1", [_book(3), _book(1)])
    assert len(await store.list_books("t1")) == 2

    book = next(b for b in await store.list_books("t1") if b.remote_id == 1)
    await store.update_book(book.id, {"title": "Renamed", "updated": "2024-02-01T00:00:00Z"})
    book = next(b for b in await store.list_books("t1") if b.remote_id == 1)
    assert book.title == "Renamed"
    assert as_utc(book.updated) == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert await store.list_books("t2") == []


@BACKENDS
@pytest.mark.asyncio
async def test_highlight_upsert_and_embeddings(kind, tmp_path):
    store = await _make_store(kind, tmp_path)
    await store.upsert_highlights(
        "t1",
        [
            {"remote_id": 10, "text": "first", "updated": "2024-01-01T00:00:00Z", "tags": []},
            {"remote_id": 11, "text": "second", "updated": "2024-01-02T00:00:00Z", "tags": []},
        ],
    )
    await store.upsert_highlights(
        "t1", [{"remote_id": 10, "text": "edited", "updated": "2024-01-03T00:00:00Z"}]
    )
    highlights = {h.remote_id: h for h in await store.list_highlights("t1")}
    assert len(highlights) == 2
    assert highlights[10].text == "edited"

    pending = await store.list_highlights_without_embeddings("t1", limit=1)
    assert [h.remote_id for h in pending] == [10]

    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    await store.set_highlight_embedding("t1", highlights[10].id, [0.1, 0.2], now)
    pending = await store.list_highlights_without_embeddings("t1", limit=10)
    assert [h.remote_id for h in pending] == [11]

    with pytest.raises(StoreError):
        await store.set_highlight_embedding("t2", highlights[11].id, [0.3], now)


@BACKENDS
@pytest.mark.asyncio
async def test_highlight_tags_ignore_duplicates(kind, tmp_path):
    store = await _make_store(kind, tmp_path)
    await store.upsert_highlights("t1", [{"remote_id": 1, "text": "a"}])
    highlight = (await store.list_highlights("t1"))[0]
    (tag,) = await store.create_tags("t1", ["focus"], source="readwise")

    assert await store.insert_highlight_tags("t1", [(highlight.id, tag.id)], "readwise") == 1
    assert await store.insert_highlight_tags("t1", [(highlight.id, tag.id)], "readwise") == 0
    assert (await store.find_tag("t1", "focus")).id == tag.id
    assert await store.find_tag("t2", "focus") is None


@BACKENDS
@pytest.mark.asyncio
async def test_sparks_categories_and_automations(kind, tmp_path):
    store = await _make_store(kind, tmp_path)
    spark = await store.insert_spark("t1", body="An idea", uid="u1", todo_id="td1")
    with pytest.raises(StoreError):
        await store.insert_spark("t1", body="Again", uid="u1")
    assert await store.find_spark_uids("t1", ["u1", "u2"]) == {"u1"}
    assert (await store.get_spark_by_uid("t1", "u1")).id == spark.id
    assert await store.get_spark_by_uid("t2", "u1") is None

    category = await store.create_category("t1", "Deep Work", "deep-work")
    assert (await store.find_category("t1", slug="deep-work")).id == category.id
    assert (await store.find_category("t1", name="Deep Work")).id == category.id
    assert await store.find_category("t1", slug="other") is None
    await store.link_spark_category(spark.id, category.id, created_by="airtable-import")

    automation = await store.create_automation(
        "t1",
        "Random Highlight Tagging",
        [{"action": "create_tag", "tag_name": "x"}, {"action": "add_tag", "target_id": "h1"}],
    )
    stored = await store.get_automation(automation.id)
    assert stored.status == "pending"
    assert stored.source == "system"
    actions = await store.list_automation_actions(automation.id)
    assert sorted(a.action_data["action"] for a in actions) == ["add_tag", "create_tag"]
