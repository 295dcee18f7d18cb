"""Readwise workflows: connection test, book count, book and highlight sync."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed, StoreError
from ..runtime import ExecutionContext
from ..store.models import as_utc
from ..utils import chunked
from .deps import WorkflowDeps, integration_settings
from .registry import workflow

BATCH_SIZE = 100

BOOK_FIELDS = (
    "title",
    "author",
    "category",
    "source",
    "num_highlights",
    "last_highlight_at",
    "updated",
    "cover_image_url",
    "highlights_url",
    "source_url",
    "asin",
    "document_note",
)

HIGHLIGHT_FIELDS = (
    "text",
    "note",
    "location",
    "location_type",
    "highlighted_at",
    "updated",
    "url",
    "color",
)


def book_row(book: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Readwise book to a ``books`` row."""
    row = {"remote_id": int(book["id"]), "tags": book.get("tags") or []}
    row.update({name: book.get(name) for name in BOOK_FIELDS})
    return row


def highlight_row(highlight: Dict[str, Any], book_id: str) -> Dict[str, Any]:
    """Map a Readwise highlight to a ``highlights`` row."""
    row = {
        "remote_id": int(highlight["id"]),
        "book_id": book_id,
        "remote_book_id": int(highlight["book_id"]),
        "tags": highlight.get("tags") or [],
    }
    row.update({name: highlight.get(name) for name in HIGHLIGHT_FIELDS})
    return row


def is_newer(remote_updated: Any, stored_updated: Any) -> bool:
    """True when the remote timestamp is strictly later than the stored one.

    A record without a stored timestamp is always considered stale.
    """
    stored = as_utc(stored_updated)
    if stored is None:
        return True
    remote = as_utc(remote_updated)
    return remote is not None and remote > stored


def classify_books(
    books: List[Dict[str, Any]], existing: Dict[str, Dict[str, Any]]
) -> Dict[str, List[Dict[str, Any]]]:
    """Split remote books into ``insert``, ``update`` and ``unchanged``.

    ``existing`` maps the remote id (as a string) to ``{"id", "updated"}`` of
    the stored row. Update rows carry the stored ``id``.
    """
    result: Dict[str, List[Dict[str, Any]]] = {"insert": [], "update": [], "unchanged": []}
    for book in books:
        row = book_row(book)
        stored = existing.get(str(row["remote_id"]))
        if stored is None:
            result["insert"].append(row)
        elif is_newer(row["updated"], stored.get("updated")):
            result["update"].append({**row, "id": stored["id"]})
        else:
            result["unchanged"].append(row)
    return result


def classify_highlights(
    highlights: List[Dict[str, Any]],
    existing: Dict[str, Dict[str, Any]],
    book_ids: Dict[str, str],
) -> Dict[str, Any]:
    """Split remote highlights into rows to upsert and counts.

    Highlights whose book is not in the library are skipped and counted as
    ``without_books``.
    """
    upsert: List[Dict[str, Any]] = []
    inserted = updated = unchanged = without_books = 0
    for highlight in highlights:
        remote_book_id = highlight.get("book_id")
        book_id = book_ids.get(str(remote_book_id)) if remote_book_id else None
        if book_id is None:
            without_books += 1
            continue
        row = highlight_row(highlight, book_id)
        stored = existing.get(str(row["remote_id"]))
        if stored is None:
            inserted += 1
        elif is_newer(row["updated"], stored.get("updated")):
            updated += 1
        else:
            unchanged += 1
            continue
        upsert.append(row)
    return {
        "upsert": upsert,
        "inserted": inserted,
        "updated": updated,
        "unchanged": unchanged,
        "without_books": without_books,
    }


def _credentials(ctx: ExecutionContext) -> tuple[Optional[str], Optional[str]]:
    return ctx.tenant_id, ctx.data.get("api_key")


@workflow("readwise-connection-test", "readwise/test-connection", name="Test Readwise Connection")
async def readwise_connection_test(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id, api_key = _credentials(ctx)
    if not tenant_id or not api_key:
        return failed("Missing user ID or API key")

    async def probe() -> Dict[str, Any]:
        result = await deps.readwise.probe_auth(api_key)
        ctx.logger.info(f"Readwise connection test: {'ok' if result.ok else result.error}")
        return {"success": result.ok, "error": result.error}

    async def mark_connected() -> Dict[str, Any]:
        await deps.update_integration(tenant_id, "readwise", isConnected=True)
        return {"success": True}

    try:
        connection = await ctx.step.run("test-readwise-connection", probe)
        if not connection["success"]:
            return failed(connection["error"] or "Invalid API key")
        await ctx.step.run("update-connection-status", mark_connected)
    except StepFailed as exc:
        return failed(exc.cause)
    return succeeded(connected=True)


@workflow("readwise-count-books", "readwise/count-books", name="Count Readwise Books")
async def readwise_count_books(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id, api_key = _credentials(ctx)
    if not tenant_id or not api_key:
        return failed("Missing user ID or API key", bookCount=0)

    async def count() -> Dict[str, Any]:
        total = await deps.readwise.count_books(api_key)
        ctx.logger.info(f"Finished counting. Total books: {total}")
        return {"count": total}

    try:
        result = await ctx.step.run("count-books-from-readwise", count)
    except StepFailed as exc:
        return failed(exc.cause, bookCount=0)
    return succeeded(bookCount=result["count"])


@workflow("readwise-sync-books", "readwise/sync-books", name="Sync Readwise Books")
async def readwise_sync_books(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id, api_key = _credentials(ctx)
    empty = dict(readwiseBooks=0, sparkBooks=0, imported=0, updated=0)
    if not tenant_id or not api_key:
        return failed("Missing user ID or API key", **empty)

    async def fetch_existing() -> Dict[str, Any]:
        books = await deps.store.list_books(tenant_id)
        ctx.logger.info(f"Found {len(books)} existing books in database")
        return {
            str(b.remote_id): {"id": b.id, "updated": b.updated} for b in books
        }

    async def import_books() -> Dict[str, Any]:
        books = await deps.readwise.fetch_all("/api/v2/books/", api_key)
        plan = classify_books(books, existing)
        ctx.logger.info(
            f"Ready to insert: {len(plan['insert'])}, update: {len(plan['update'])}, "
            f"unchanged: {len(plan['unchanged'])}"
        )

        inserted = failed_batches = 0
        for number, batch in enumerate(chunked(plan["insert"], BATCH_SIZE), start=1):
            try:
                inserted += await deps.store.insert_books(tenant_id, batch)
            except StoreError as exc:
                failed_batches += 1
                ctx.logger.error(f"Error inserting books batch {number}: {exc}")

        updated = failed_updates = 0
        for row in plan["update"]:
            values = dict(row)
            book_id = values.pop("id")
            try:
                await deps.store.update_book(book_id, values)
                updated += 1
            except StoreError as exc:
                failed_updates += 1
                ctx.logger.error(f"Error updating book {row['remote_id']}: {exc}")

        return {
            "readwiseBooks": len(books),
            "imported": inserted,
            "updated": updated,
            "unchanged": len(plan["unchanged"]),
            "failedBatches": failed_batches,
            "failedUpdates": failed_updates,
        }

    async def update_last_synced() -> Dict[str, Any]:
        synced_at = deps.now().isoformat()
        await deps.update_integration(tenant_id, "readwise", lastSyncTime=synced_at)
        return {"lastSyncTime": synced_at}

    try:
        existing = await ctx.step.run("fetch-existing-books", fetch_existing)
        result = await ctx.step.run("import-books-from-readwise", import_books)
        await ctx.step.run("update-last-synced", update_last_synced)
    except StepFailed as exc:
        return failed(exc.cause, **empty)

    ctx.logger.info(
        f"Book sync completed: {result['imported']} imported, {result['updated']} updated"
    )
    return succeeded(sparkBooks=len(existing), **result)


@workflow("readwise-sync-highlights", "readwise/sync-highlights", name="Sync Readwise Highlights")
async def readwise_sync_highlights(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id, api_key = _credentials(ctx)
    empty = dict(totalHighlights=0, upserted=0, existingHighlights=0)
    if not tenant_id or not api_key:
        return failed("Missing user ID or API key", **empty)

    async def fetch_existing() -> Dict[str, Any]:
        highlights = await deps.store.list_highlights(tenant_id)
        ctx.logger.info(f"Found {len(highlights)} existing highlights in database")
        return {
            str(h.remote_id): {"id": h.id, "updated": h.updated} for h in highlights
        }

    async def fetch_book_ids() -> Dict[str, str]:
        books = await deps.store.list_books(tenant_id)
        return {str(b.remote_id): b.id for b in books}

    async def fetch_last_sync() -> Dict[str, Any]:
        settings = await deps.store.get_settings(tenant_id)
        last_synced = integration_settings(settings, "readwise").get("lastSynced")
        ctx.logger.info(f"Last sync timestamp: {last_synced or 'none (first sync)'}")
        return {"lastSynced": last_synced}

    async def import_highlights() -> Dict[str, Any]:
        path = "/api/v2/highlights/"
        if last_synced:
            path = f"{path}?updated__gt={quote(last_synced)}"
        highlights = await deps.readwise.fetch_all(path, api_key)
        plan = classify_highlights(highlights, existing, book_ids)

        upserted = failed_batches = 0
        for number, batch in enumerate(chunked(plan["upsert"], BATCH_SIZE), start=1):
            try:
                upserted += await deps.store.upsert_highlights(tenant_id, batch)
            except StoreError as exc:
                failed_batches += 1
                ctx.logger.error(f"Error upserting highlights batch {number}: {exc}")

        return {
            "totalHighlights": len(highlights),
            "upserted": upserted,
            "inserted": plan["inserted"],
            "updated": plan["updated"],
            "unchanged": plan["unchanged"],
            "withoutBooks": plan["without_books"],
            "failedBatches": failed_batches,
        }

    async def update_last_synced() -> Dict[str, Any]:
        synced_at = deps.now().isoformat()
        await deps.update_integration(tenant_id, "readwise", lastSynced=synced_at)
        return {"lastSynced": synced_at}

    try:
        existing = await ctx.step.run("fetch-existing-highlights", fetch_existing)
        book_ids = await ctx.step.run("fetch-book-ids", fetch_book_ids)
        last_sync = await ctx.step.run("fetch-last-sync-timestamp", fetch_last_sync)
        last_synced = last_sync["lastSynced"]
        ctx.logger.info(f"Performing {'incremental' if last_synced else 'full'} sync")
        result = await ctx.step.run("import-highlights-from-readwise", import_highlights)
        await ctx.step.run("update-last-synced", update_last_synced)
    except StepFailed as exc:
        return failed(exc.cause, **empty)

    return succeeded(
        existingHighlights=len(existing),
        syncType="incremental" if last_synced else "full",
        **result,
    )
