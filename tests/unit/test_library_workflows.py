"""Embedding, tag migration, automation and scheduled task workflows."""

from datetime import datetime, timezone

import pytest

from sparkflow.contracts import WorkflowEvent
from sparkflow.errors import EmbeddingError
from sparkflow.persistence import InMemoryRunRepository
from sparkflow.runtime import WorkflowEngine
from sparkflow.store import InMemoryLibraryStore
from sparkflow.workflows import load_workflows
from sparkflow.workflows.automations import TAG, build_actions
from sparkflow.workflows.deps import WorkflowDeps
from sparkflow.workflows.tags import normalize_tag

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)


class FakeEmbeddings:
    def __init__(self, configured=True, fail=False):
        self.configured = configured
        self.fail = fail
        self.batches = []

    async def embed_all(self, texts, batch_size=None):
        self.batches.append((list(texts), batch_size))
        if self.fail:
            raise EmbeddingError("provider down")
        return [[float(len(text)), 0.5] for text in texts]


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, name, data=None):
        self.sent.append((name, data))
        return "evt"


def _engine(store, embeddings=None, dispatcher=None):
    load_workflows()
    deps = WorkflowDeps(
        store=store,
        readwise=None,
        airtable=None,
        embeddings=embeddings or FakeEmbeddings(),
        dispatcher=dispatcher,
        clock=lambda: NOW,
    )
    return WorkflowEngine(repository=InMemoryRunRepository(), deps=deps)


def _event(name, **data):
    return WorkflowEvent(name=name, data={"tenant_id": "t1", **data})


async def _highlights(store, count, **row):
    await store.upsert_highlights(
        "t1",
        [{"remote_id": i, "text": f"highlight {i}", **row} for i in range(1, count + 1)],
    )
    return await store.list_highlights("t1")


# embeddings -------------------------------------------------------------


@pytest.mark.asyncio
async def test_embeddings_are_generated_and_stored():
    store = InMemoryLibraryStore()
    await _highlights(store, 3)
    embeddings = FakeEmbeddings()

    outcome = await _engine(store, embeddings).run(
        _event("embeddings/generate-highlight-embeddings")
    )

    assert outcome.ok
    assert outcome.data["processed"] == 3
    assert outcome.data["failed"] == 0
    assert outcome.data["totalHighlights"] == 3
    assert embeddings.batches[0][1] == 50
    for highlight in await store.list_highlights("t1"):
        assert highlight.embedding == [float(len(highlight.text)), 0.5]
        assert highlight.embedding_updated_at == NOW


@pytest.mark.asyncio
async def test_embeddings_count_failed_rows():
    store = InMemoryLibraryStore()
    await _highlights(store, 2)
    store.fail_on.add("set_highlight_embedding")

    outcome = await _engine(store).run(_event("embeddings/generate-highlight-embeddings"))

    assert outcome.ok
    assert outcome.data["processed"] == 0
    assert outcome.data["failed"] == 2


@pytest.mark.asyncio
async def test_embeddings_without_highlights():
    outcome = await _engine(InMemoryLibraryStore()).run(
        _event("embeddings/generate-highlight-embeddings")
    )
    assert outcome.ok
    assert outcome.data["message"] == "No highlights to process"
    assert outcome.data["processed"] == 0


@pytest.mark.asyncio
async def test_embeddings_require_api_key():
    outcome = await _engine(InMemoryLibraryStore(), FakeEmbeddings(configured=False)).run(
        _event("embeddings/generate-highlight-embeddings")
    )
    assert outcome.error == "OPENAI_API_KEY not configured"


@pytest.mark.asyncio
async def test_embedding_provider_failure_fails_run():
    store = InMemoryLibraryStore()
    await _highlights(store, 1)
    outcome = await _engine(store, FakeEmbeddings(fail=True)).run(
        _event("embeddings/generate-highlight-embeddings")
    )
    assert outcome.error == "provider down"
    assert all(h.embedding is None for h in await store.list_highlights("t1"))


# tag migration ----------------------------------------------------------


def test_normalize_tag():
    assert normalize_tag({"id": 1, "name": " Focus "}) == "focus"
    assert normalize_tag("Ideas") == "ideas"
    assert normalize_tag("  ") is None
    assert normalize_tag({"id": 2}) is None


@pytest.mark.asyncio
async def test_migrate_tags_creates_tags_and_links():
    store = InMemoryLibraryStore()
    (existing,) = await store.create_tags("t1", ["focus"], source="readwise")
    await store.upsert_highlights(
        "t1",
        [
            {"remote_id": 1, "text": "a", "tags": [{"id": 1, "name": "Focus"}, "ideas"]},
            {"remote_id": 2, "text": "b", "tags": ["IDEAS "]},
            {"remote_id": 3, "text": "c", "tags": []},
        ],
    )

    outcome = await _engine(store).run(_event("tags/migrate-highlight-tags"))

    assert outcome.ok
    assert outcome.data == {"migrated": 3, "tagsCreated": 1, "uniqueTags": 2}
    assert sorted(t.name for t in store.tags.values()) == ["focus", "ideas"]
    assert len(store.highlight_tags) == 3
    assert set(store.highlight_tags.values()) == {"readwise"}
    assert any(tag_id == existing.id for _, tag_id in store.highlight_tags)

    # A second migration finds every tag and association in place.
    again = await _engine(store).run(_event("tags/migrate-highlight-tags"))
    assert again.data["tagsCreated"] == 0
    assert len(store.highlight_tags) == 3
    assert len(store.tags) == 2


@pytest.mark.asyncio
async def test_migrate_tags_with_nothing_to_do():
    store = InMemoryLibraryStore()
    await _highlights(store, 2)
    outcome = await _engine(store).run(_event("tags/migrate-highlight-tags"))
    assert outcome.ok
    assert outcome.data["migrated"] == 0


# automations ------------------------------------------------------------


def test_build_actions_for_missing_tag():
    actions = build_actions(TAG, ["h1", "", "h2"], None)
    assert actions == [
        {"action": "create_tag", "tag_name": "automation-test"},
        {"action": "add_tag", "target": "highlight", "target_id": "h1", "tag_id": "", "tag_name": "automation-test"},
        {"action": "add_tag", "target": "highlight", "target_id": "h2", "tag_id": "", "tag_name": "automation-test"},
    ]


@pytest.mark.asyncio
async def test_tag_random_highlights_proposes_automation():
    store = InMemoryLibraryStore()
    await _highlights(store, 7)

    outcome = await _engine(store).run(_event("automations/tag-random-highlights"))

    assert outcome.ok
    assert outcome.data["highlightsCount"] == 5
    assert outcome.data["tagExists"] is False
    automation = await store.get_automation(outcome.data["automationId"])
    assert automation.name == "Random Highlight Tagging"
    assert automation.status == "pending"
    actions = [a.action_data for a in await store.list_automation_actions(automation.id)]
    assert sum(a["action"] == "create_tag" for a in actions) == 1
    assert sum(a["action"] == "add_tag" for a in actions) == 5
    # Proposals only; nothing is applied yet.
    assert store.tags == {}


@pytest.mark.asyncio
async def test_tag_random_highlights_uses_existing_tag():
    store = InMemoryLibraryStore()
    await _highlights(store, 2)
    (tag,) = await store.create_tags("t1", ["automation-test"])

    outcome = await _engine(store).run(_event("automations/tag-random-highlights"))

    assert outcome.data["tagExists"] is True
    actions = [
        a.action_data
        for a in await store.list_automation_actions(outcome.data["automationId"])
    ]
    assert len(actions) == 2
    assert all(a["tag_id"] == tag.id and "tag_name" not in a for a in actions)


@pytest.mark.asyncio
async def test_categorize_random_highlights():
    store = InMemoryLibraryStore()
    await _highlights(store, 3)
    category = await store.create_category("t1", "Automation Test", "automation-test")

    outcome = await _engine(store).run(_event("automations/categorize-random-highlights"))

    assert outcome.ok
    assert outcome.data["categoryExists"] is True
    automation = await store.get_automation(outcome.data["automationId"])
    assert automation.name == "Random Highlight Categorization"
    actions = [a.action_data for a in await store.list_automation_actions(automation.id)]
    assert {a["action"] for a in actions} == {"add_category"}
    assert all(a["category_id"] == category.id for a in actions)


@pytest.mark.asyncio
async def test_automation_without_highlights_fails():
    outcome = await _engine(InMemoryLibraryStore()).run(
        _event("automations/tag-random-highlights")
    )
    assert outcome.error == "No highlights found for this user"


# scheduled tasks --------------------------------------------------------


@pytest.mark.asyncio
async def test_cron_workflow_triggers_due_tasks():
    store = InMemoryLibraryStore()
    store.settings["t1"] = {
        "integrations": {"readwise": {"apiKey": "rw"}},
        "scheduledTasks": {"readwise-books-import": {"enabled": True, "frequency": "daily"}},
    }
    dispatcher = RecordingDispatcher()

    outcome = await _engine(store, dispatcher=dispatcher).run(
        WorkflowEvent(name="scheduler/tick")
    )

    assert outcome.ok
    assert outcome.data["totalTenants"] == 1
    assert outcome.data["triggeredTasks"] == 1
    assert dispatcher.sent == [("readwise/sync-books", {"tenant_id": "t1", "api_key": "rw"})]
    task = store.settings["t1"]["scheduledTasks"]["readwise-books-import"]
    assert task["lastRun"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_cron_workflow_without_tenants():
    outcome = await _engine(InMemoryLibraryStore(), dispatcher=RecordingDispatcher()).run(
        WorkflowEvent(name="scheduler/tick")
    )
    assert outcome.ok
    assert outcome.data["triggeredTasks"] == 0
