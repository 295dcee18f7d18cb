"""Generate embeddings for highlights that do not have one yet."""

from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed, StoreError
from ..runtime import ExecutionContext
from .deps import WorkflowDeps
from .registry import workflow


@workflow(
    "generate-highlight-embeddings",
    "embeddings/generate-highlight-embeddings",
    name="Generate Highlight Embeddings",
)
async def generate_highlight_embeddings(
    ctx: ExecutionContext, deps: WorkflowDeps
) -> Terminal:
    tenant_id = ctx.tenant_id
    empty = dict(processed=0, failed=0, totalHighlights=0)
    if not tenant_id:
        return failed("Missing user ID", **empty)
    if not deps.embeddings.configured:
        return failed("OPENAI_API_KEY not configured", **empty)

    config = deps.config.embeddings

    async def fetch_highlights() -> List[Dict[str, Any]]:
        highlights = await deps.store.list_highlights_without_embeddings(
            tenant_id, config.fetch_limit
        )
        ctx.logger.info(f"Found {len(highlights)} highlights without embeddings")
        return [{"id": h.id, "text": h.text} for h in highlights if h.text.strip()]

    async def generate() -> List[Dict[str, Any]]:
        texts = [h["text"] for h in highlights]
        vectors = await deps.embeddings.embed_all(texts, config.batch_size)
        return [
            {"id": h["id"], "embedding": vector}
            for h, vector in zip(highlights, vectors)
        ]

    async def update_database() -> Dict[str, int]:
        processed = failures = 0
        updated_at = deps.now()
        for item in embeddings:
            try:
                await deps.store.set_highlight_embedding(
                    tenant_id, item["id"], item["embedding"], updated_at
                )
                processed += 1
            except StoreError as exc:
                failures += 1
                ctx.logger.error(f"Error updating highlight {item['id']}: {exc}")
        return {"processed": processed, "failed": failures}

    try:
        highlights = await ctx.step.run(
            "fetch-highlights-without-embeddings", fetch_highlights
        )
        if not highlights:
            return succeeded(message="No highlights to process", **empty)
        embeddings = await ctx.step.run("generate-embeddings", generate)
        result = await ctx.step.run("update-database-with-embeddings", update_database)
    except StepFailed as exc:
        return failed(exc.cause, **empty)

    return succeeded(
        totalHighlights=len(highlights),
        message=f"Generated embeddings for {result['processed']} highlights",
        **result,
    )
