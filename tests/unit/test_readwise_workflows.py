"""Readwise workflow tests with a fake API client."""

from datetime import datetime, timezone

import pytest

from sparkflow.clients.readwise import AuthProbeResult
from sparkflow.contracts import WorkflowEvent
from sparkflow.errors import ReadwiseAPIError
from sparkflow.persistence import InMemoryRunRepository
from sparkflow.runtime import WorkflowEngine
from sparkflow.store import InMemoryLibraryStore
from sparkflow.workflows import load_workflows
from sparkflow.workflows.deps import WorkflowDeps
from sparkflow.workflows.readwise import classify_books, classify_highlights, is_newer

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
T0 = "2024-01-01T00:00:00Z"
T0_PLUS_1S = "2024-01-01T00:00:01Z"


class FakeReadwise:
    def __init__(self, books=(), highlights=(), auth=None, fail=None):
        self.books = list(books)
        self.highlights = list(highlights)
        self.auth = auth or AuthProbeResult(ok=True)
        self.fail = fail
        self.paths = []

    async def fetch_all(self, path, credential):
        self.paths.append(path)
        if self.fail:
            raise self.fail
        if path.startswith("/api/v2/books/"):
            return list(self.books)
        return list(self.highlights)

    async def count_books(self, credential):
        if self.fail:
            raise self.fail
        return len(self.books)

    async def probe_auth(self, credential):
        return self.auth


def _engine(store, readwise):
    load_workflows()
    deps = WorkflowDeps(
        store=store,
        readwise=readwise,
        airtable=None,
        embeddings=None,
        clock=lambda: NOW,
    )
    return WorkflowEngine(repository=InMemoryRunRepository(), deps=deps)


def _event(name, **data):
    return WorkflowEvent(name=name, data={"tenant_id": "t1", "api_key": "rw", **data})


def _remote_book(remote_id, updated):
    return {"id": remote_id, "title": f"Book {remote_id}", "author": "A", "updated": updated}


def test_is_newer_is_strict():
    assert not is_newer(T0, T0)
    assert is_newer(T0_PLUS_1S, T0)
    assert not is_newer(T0, T0_PLUS_1S)
    assert is_newer(T0, None)
    assert not is_newer("2024-01-01T00:00:00+00:00", "2024-01-01 00:00:00")


def test_classify_books():
    existing = {
        "1": {"id": "b1", "updated": T0},
        "2": {"id": "b2", "updated": T0},
    }
    plan = classify_books(
        [_remote_book(1, T0), _remote_book(2, T0_PLUS_1S), _remote_book(3, T0)], existing
    )

    assert [row["remote_id"] for row in plan["insert"]] == [3]
    assert [row["id"] for row in plan["update"]] == ["b2"]
    assert [row["remote_id"] for row in plan["unchanged"]] == [1]
    assert plan["insert"][0]["title"] == "Book 3"
    assert plan["insert"][0]["tags"] == []


def test_classify_highlights_skips_unknown_books():
    existing = {"100": {"id": "h1", "updated": T0}, "101": {"id": "h2", "updated": T0}}
    book_ids = {"1": "book-1"}
    plan = classify_highlights(
        [
            {"id": 100, "book_id": 1, "text": "same", "updated": T0},
            {"id": 101, "book_id": 1, "text": "newer", "updated": T0_PLUS_1S},
            {"id": 102, "book_id": 1, "text": "new", "updated": T0},
            {"id": 103, "book_id": 9, "text": "orphan", "updated": T0},
            {"id": 104, "book_id": None, "text": "no book", "updated": T0},
        ],
        existing,
        book_ids,
    )

    assert [row["remote_id"] for row in plan["upsert"]] == [101, 102]
    assert plan["upsert"][0]["book_id"] == "book-1"
    assert plan["upsert"][0]["remote_book_id"] == 1
    assert (plan["inserted"], plan["updated"], plan["unchanged"]) == (1, 1, 1)
    assert plan["without_books"] == 2


@pytest.mark.asyncio
async def test_sync_books_inserts_and_updates():
    store = InMemoryLibraryStore()
    await store.insert_books(
        "t1",
        [
            {"remote_id": 1, "title": "Book 1", "updated": T0},
            {"remote_id": 2, "title": "Old title", "updated": T0},
        ],
    )
    readwise = FakeReadwise(
        books=[_remote_book(1, T0), _remote_book(2, T0_PLUS_1S), _remote_book(3, T0)]
    )

    outcome = await _engine(store, readwise).run(_event("readwise/sync-books"))

    assert outcome.ok
    assert outcome.data["readwiseBooks"] == 3
    assert outcome.data["sparkBooks"] == 2
    assert outcome.data["imported"] == 1
    assert outcome.data["updated"] == 1
    assert outcome.data["unchanged"] == 1
    assert outcome.data["failedBatches"] == 0

    titles = sorted(b.title for b in await store.list_books("t1"))
    assert titles == ["Book 1", "Book 2", "Book 3"]
    readwise_settings = store.settings["t1"]["integrations"]["readwise"]
    assert readwise_settings["lastSyncTime"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_sync_books_counts_failed_batches():
    store = InMemoryLibraryStore()
    store.fail_on.add("insert_books")
    readwise = FakeReadwise(books=[_remote_book(i, T0) for i in range(1, 151)])

    outcome = await _engine(store, readwise).run(_event("readwise/sync-books"))

    assert outcome.ok
    assert outcome.data["imported"] == 0
    assert outcome.data["failedBatches"] == 2
    assert "lastSyncTime" in store.settings["t1"]["integrations"]["readwise"]


@pytest.mark.asyncio
async def test_sync_books_api_failure_is_reported():
    store = InMemoryLibraryStore()
    readwise = FakeReadwise(fail=ReadwiseAPIError(500, "oops"))

    outcome = await _engine(store, readwise).run(_event("readwise/sync-books"))

    assert not outcome.ok
    assert "500" in outcome.error
    assert outcome.data == {"readwiseBooks": 0, "sparkBooks": 0, "imported": 0, "updated": 0}
    assert store.settings == {}


@pytest.mark.asyncio
async def test_sync_requires_credentials():
    store = InMemoryLibraryStore()
    event = WorkflowEvent(name="readwise/sync-books", data={"tenant_id": "t1"})
    outcome = await _engine(store, FakeReadwise()).run(event)
    assert outcome.error == "Missing user ID or API key"


@pytest.mark.asyncio
async def test_sync_highlights_incremental():
    store = InMemoryLibraryStore()
    await store.insert_books("t1", [{"remote_id": 1, "title": "Book 1"}])
    await store.save_settings(
        "t1", {"integrations": {"readwise": {"apiKey": "rw", "lastSynced": "2024-04-01T00:00:00+00:00"}}}
    )
    await store.upsert_highlights(
        "t1", [{"remote_id": 100, "text": "same", "updated": T0, "remote_book_id": 1}]
    )
    readwise = FakeReadwise(
        highlights=[
            {"id": 100, "book_id": 1, "text": "same", "updated": T0},
            {"id": 101, "book_id": 1, "text": "new", "updated": T0},
            {"id": 102, "book_id": 7, "text": "orphan", "updated": T0},
        ]
    )

    outcome = await _engine(store, readwise).run(_event("readwise/sync-highlights"))

    assert outcome.ok
    assert outcome.data["syncType"] == "incremental"
    assert outcome.data["totalHighlights"] == 3
    assert outcome.data["existingHighlights"] == 1
    assert outcome.data["upserted"] == 1
    assert outcome.data["withoutBooks"] == 1
    assert outcome.data["unchanged"] == 1
    assert readwise.paths == [
        "/api/v2/highlights/?updated__gt=2024-04-01T00%3A00%3A00%2B00%3A00"
    ]
    assert len(await store.list_highlights("t1")) == 2
    readwise_settings = store.settings["t1"]["integrations"]["readwise"]
    assert readwise_settings["lastSynced"] == NOW.isoformat()
    assert readwise_settings["apiKey"] == "rw"


@pytest.mark.asyncio
async def test_sync_highlights_failure_keeps_last_synced():
    store = InMemoryLibraryStore()
    readwise = FakeReadwise(fail=ReadwiseAPIError(502, "bad gateway"))

    outcome = await _engine(store, readwise).run(_event("readwise/sync-highlights"))

    assert not outcome.ok
    assert readwise.paths == ["/api/v2/highlights/"]
    assert store.settings == {}


@pytest.mark.asyncio
async def test_connection_test_marks_connected():
    store = InMemoryLibraryStore()
    outcome = await _engine(store, FakeReadwise()).run(_event("readwise/test-connection"))

    assert outcome.ok
    assert store.settings["t1"]["integrations"]["readwise"]["isConnected"] is True


@pytest.mark.asyncio
async def test_connection_test_failure():
    store = InMemoryLibraryStore()
    readwise = FakeReadwise(auth=AuthProbeResult(ok=False, error="Invalid token."))
    outcome = await _engine(store, readwise).run(_event("readwise/test-connection"))

    assert outcome.error == "Invalid token."
    assert store.settings == {}


@pytest.mark.asyncio
async def test_count_books():
    readwise = FakeReadwise(books=[_remote_book(i, T0) for i in range(4)])
    outcome = await _engine(InMemoryLibraryStore(), readwise).run(
        _event("readwise/count-books")
    )
    assert outcome.ok
    assert outcome.data == {"bookCount": 4}
