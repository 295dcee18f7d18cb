"""Spark import workflow tests."""

from datetime import datetime, timezone

import pytest

from sparkflow.contracts import WorkflowEvent
from sparkflow.persistence import InMemoryRunRepository
from sparkflow.runtime import WorkflowEngine
from sparkflow.store import InMemoryLibraryStore
from sparkflow.workflows import load_workflows
from sparkflow.workflows.airtable import category_slug, clean_spark_content, process_records
from sparkflow.workflows.deps import WorkflowDeps

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)


class FakeAirtable:
    def __init__(self, records):
        self.records = records
        self.calls = []

    async def list_records(self, api_key, base_id, table_id):
        self.calls.append((api_key, base_id, table_id))
        return list(self.records)


def _record(uid, content="A thought", categories=("Deep Work",), tags=("focus",), **extra):
    fields = {"uid": uid, "content": content, **extra}
    if categories is not None:
        fields["Name (from Categories)"] = list(categories)
    if tags is not None:
        fields["Name (from Tags)"] = list(tags)
    return {"id": f"rec-{uid}", "fields": fields}


def _run(store, records):
    load_workflows()
    deps = WorkflowDeps(
        store=store,
        readwise=None,
        airtable=FakeAirtable(records),
        embeddings=None,
        clock=lambda: NOW,
    )
    engine = WorkflowEngine(repository=InMemoryRunRepository(), deps=deps)
    event = WorkflowEvent(
        name="airtable/import-sparks",
        data={"tenant_id": "t1", "api_key": "key", "base_id": "base1", "table_id": "tbl1"},
    )
    return engine.run(event)


def test_clean_spark_content():
    assert clean_spark_content("Xtians and xtian ideas") == "Christians and Christian ideas"
    assert clean_spark_content("Q for Sam: why?") == "question for Sam: why?"
    assert clean_spark_content("q: what next") == "question: what next"
    assert clean_spark_content("faq: no change") == "faq: no change"


def test_category_slug():
    assert category_slug("Deep  Work ") == "deep-work"


def test_process_records_counts_first_missing_field():
    result = process_records(
        [
            _record("u1", todoId="td1", originallyCreated="2023-01-01"),
            {"id": "rec-x", "fields": {"content": "no uid"}},
            _record("u2", content="   "),
            _record("u3", categories=None),
            _record("u4", categories=["", "Later"]),
            _record("u5", tags=[]),
            _record("u6", tags=["", None]),
        ]
    )

    assert [s["uid"] for s in result["sparks"]] == ["u1", "u4"]
    assert result["sparks"][0]["todo_id"] == "td1"
    assert result["sparks"][0]["todo_created_at"] == "2023-01-01"
    assert result["sparks"][1]["category"] == "Later"
    assert result["skipped"] == {"noUid": 1, "noContent": 1, "noCategory": 1, "noTags": 2}


@pytest.mark.asyncio
async def test_import_links_categories_and_tags():
    store = InMemoryLibraryStore()
    (existing_tag,) = await store.create_tags("t1", ["focus"])
    records = [
        _record("u1", content="xtian q: habits", tags=["focus", "habits"]),
        _record("u2", categories=["deep work"], tags=["habits"]),
        _record("u3", categories=None),
    ]

    outcome = await _run(store, records)

    assert outcome.ok
    assert outcome.data["totalRecords"] == 3
    assert outcome.data["validRecords"] == 2
    assert outcome.data["importedRecords"] == 2
    assert outcome.data["skippedNoCategory"] == 1
    assert outcome.data["newCategories"] == 1
    assert outcome.data["newTags"] == 1

    bodies = sorted(s.body for s in store.sparks.values())
    assert bodies == ["A thought", "Christian question: habits"]
    assert len(store.categories) == 1
    assert len(store.spark_categories) == 2
    assert len(store.spark_tags) == 3
    assert any(tag_id == existing_tag.id for _, tag_id in store.spark_tags)

    last_import = store.settings["t1"]["integrations"]["airtable"]["lastImport"]
    assert last_import["imported"] == 2
    assert last_import["skipped"]["noCategory"] == 1
    assert last_import["skipped"]["duplicates"] == 0
    assert last_import["baseId"] == "base1"
    assert last_import["tableId"] == "tbl1"
    assert last_import["date"] == NOW.isoformat()
    assert last_import["newCategories"] == ["Deep Work"]
    assert last_import["newTags"] == ["habits"]


@pytest.mark.asyncio
async def test_second_import_skips_duplicates():
    store = InMemoryLibraryStore()
    first = await _run(store, [_record("u1")])
    assert first.data["importedRecords"] == 1

    second = await _run(store, [_record("u1"), _record("u2")])

    assert second.ok
    assert second.data["skippedDuplicates"] == 1
    assert second.data["importedRecords"] == 1
    assert second.data["newCategories"] == 0
    assert sorted(s.uid for s in store.sparks.values()) == ["u1", "u2"]


@pytest.mark.asyncio
async def test_failed_spark_insert_is_skipped():
    store = InMemoryLibraryStore()
    store.fail_on.add("insert_spark")

    outcome = await _run(store, [_record("u1")])

    assert outcome.ok
    assert outcome.data["importedRecords"] == 0
    assert store.sparks == {}


class FlakyStore(InMemoryLibraryStore):
    """Drops the connection on the second spark insert, once."""

    def __init__(self):
        super().__init__()
        self.inserts = 0

    async def insert_spark(self, tenant_id, body, uid, **kwargs):
        self.inserts += 1
        if self.inserts == 2:
            raise ConnectionResetError("connection reset by peer")
        return await super().insert_spark(tenant_id, body, uid, **kwargs)


@pytest.mark.asyncio
async def test_resumed_import_links_sparks_from_earlier_attempt():
    load_workflows()
    store = FlakyStore()
    deps = WorkflowDeps(
        store=store,
        readwise=None,
        airtable=FakeAirtable([_record("u1"), _record("u2", tags=["habits"])]),
        embeddings=None,
        clock=lambda: NOW,
    )
    engine = WorkflowEngine(repository=InMemoryRunRepository(), deps=deps)
    event = WorkflowEvent(
        name="airtable/import-sparks",
        data={"tenant_id": "t1", "api_key": "key", "base_id": "base1", "table_id": "tbl1"},
    )

    first = await engine.run(event)
    assert not first.ok
    assert len(store.sparks) == 1

    outcome = await engine.resume(event.id)

    assert outcome.ok
    assert outcome.data["importedRecords"] == 2
    assert sorted(s.uid for s in store.sparks.values()) == ["u1", "u2"]
    assert {spark_id for spark_id, _ in store.spark_categories} == set(store.sparks)
    assert {spark_id for spark_id, _ in store.spark_tags} == set(store.sparks)


@pytest.mark.asyncio
async def test_empty_table_fails():
    outcome = await _run(InMemoryLibraryStore(), [])
    assert outcome.error == "Failed to fetch data from Airtable or no records found"
    assert outcome.data["importedRecords"] == 0


@pytest.mark.asyncio
async def test_missing_parameters():
    load_workflows()
    engine = WorkflowEngine(repository=InMemoryRunRepository(), deps=None)
    outcome = await engine.run(
        WorkflowEvent(name="airtable/import-sparks", data={"tenant_id": "t1"})
    )
    assert outcome.error == "Missing required parameters"
    assert outcome.data["importedRecords"] == 0
