"""Move tags stored on highlight rows into the tags tables."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed
from ..runtime import ExecutionContext
from ..utils import chunked
from .deps import WorkflowDeps
from .registry import workflow

TAG_SOURCE = "readwise"
ASSOCIATION_BATCH_SIZE = 100


def normalize_tag(tag: Any) -> Optional[str]:
    """Return the lower-cased tag name, or None when it is blank.

    Readwise tags arrive either as plain strings or as ``{"id", "name"}``.
    """
    if isinstance(tag, dict):
        tag = tag.get("name")
    if not isinstance(tag, str) or not tag.strip():
        return None
    return tag.strip().lower()


@workflow("migrate-highlight-tags", "tags/migrate-highlight-tags", name="Migrate Highlight Tags")
async def migrate_highlight_tags(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id = ctx.tenant_id
    if not tenant_id:
        return failed("Missing user ID")

    async def fetch_highlights() -> List[Dict[str, Any]]:
        highlights = []
        for highlight in await deps.store.list_highlights(tenant_id):
            names = [n for n in map(normalize_tag, highlight.tags or []) if n]
            if names:
                highlights.append({"id": highlight.id, "tags": names})
        ctx.logger.info(f"Found {len(highlights)} highlights with tags")
        return highlights

    async def fetch_tags() -> Dict[str, str]:
        tags = await deps.store.list_tags(tenant_id)
        ctx.logger.info(f"Found {len(tags)} existing tags")
        return {tag.name.lower(): tag.id for tag in tags}

    async def process_tags() -> Dict[str, Any]:
        unique = sorted({name for h in highlights for name in h["tags"]})
        missing = [name for name in unique if name not in existing_tags]
        tag_map = dict(existing_tags)
        if missing:
            ctx.logger.info(f"Inserting {len(missing)} new tags")
            for tag in await deps.store.create_tags(tenant_id, missing, source=TAG_SOURCE):
                tag_map[tag.name.lower()] = tag.id
        return {
            "tagMap": tag_map,
            "uniqueTagCount": len(unique),
            "insertedTagCount": len(missing),
        }

    async def create_associations() -> Dict[str, int]:
        tag_map = processed["tagMap"]
        pairs = []
        for highlight in highlights:
            for name in highlight["tags"]:
                tag_id = tag_map.get(name)
                if tag_id is None:
                    ctx.logger.warning(f"Tag ID not found for tag name: {name}")
                    continue
                pairs.append((highlight["id"], tag_id))

        inserted = 0
        for batch in chunked(pairs, ASSOCIATION_BATCH_SIZE):
            inserted += await deps.store.insert_highlight_tags(
                tenant_id, batch, source=TAG_SOURCE
            )
        if inserted < len(pairs):
            ctx.logger.warning(
                f"Skipped {len(pairs) - inserted} existing highlight-tag associations"
            )
        return {"associationsCount": len(pairs), "inserted": inserted}

    try:
        highlights = await ctx.step.run("fetch-highlights-with-tags", fetch_highlights)
        if not highlights:
            return succeeded(migrated=0, message="No highlights with tags to migrate")
        existing_tags = await ctx.step.run("fetch-existing-tags", fetch_tags)
        processed = await ctx.step.run("process-and-insert-tags", process_tags)
        associations = await ctx.step.run(
            "create-highlight-tag-associations", create_associations
        )
    except StepFailed as exc:
        return failed(exc.cause)

    return succeeded(
        migrated=associations["associationsCount"],
        tagsCreated=processed["insertedTagCount"],
        uniqueTags=processed["uniqueTagCount"],
    )
