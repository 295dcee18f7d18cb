"""Import sparks from an Airtable table into the tenant library."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed, StoreError
from ..runtime import ExecutionContext
from ..utils import chunked
from .deps import WorkflowDeps
from .registry import workflow

DUPLICATE_BATCH_SIZE = 100
CREATED_BY = "airtable-import"
CATEGORY_FIELD = "Name (from Categories)"
TAGS_FIELD = "Name (from Tags)"

_REPLACEMENTS = (
    (re.compile(r"\bxtians\b", re.IGNORECASE), "Christians"),
    (re.compile(r"\bxtian\b", re.IGNORECASE), "Christian"),
    (re.compile(r"\bq for\b", re.IGNORECASE), "question for"),
    (re.compile(r"\bq:\s", re.IGNORECASE), "question: "),
)

EMPTY_RESULT = dict(
    totalRecords=0,
    validRecords=0,
    importedRecords=0,
    skippedDuplicates=0,
    skippedNoUid=0,
    skippedNoContent=0,
    skippedNoCategory=0,
    skippedNoTags=0,
    newCategories=0,
    newTags=0,
)


def clean_spark_content(content: str) -> str:
    """Expand the shorthand used in spark notes."""
    for pattern, replacement in _REPLACEMENTS:
        content = pattern.sub(replacement, content)
    return content


def category_slug(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


def _first_category(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return next((v for v in value if isinstance(v, str) and v.strip()), None)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _tag_names(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v.strip()]


def process_records(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate Airtable records and turn them into spark rows.

    Records are checked for a uid, content, a category and at least one tag,
    in that order. The first missing field decides the skip reason.
    """
    sparks: List[Dict[str, Any]] = []
    skipped = {"noUid": 0, "noContent": 0, "noCategory": 0, "noTags": 0}
    for record in records:
        fields = record.get("fields") or {}
        uid = fields.get("uid")
        content = fields.get("content")
        if not uid:
            skipped["noUid"] += 1
            continue
        if not content or not str(content).strip():
            skipped["noContent"] += 1
            continue
        category = _first_category(fields.get(CATEGORY_FIELD))
        if category is None:
            skipped["noCategory"] += 1
            continue
        tags = _tag_names(fields.get(TAGS_FIELD))
        if not tags:
            skipped["noTags"] += 1
            continue
        sparks.append(
            {
                "airtable_id": record.get("id"),
                "uid": str(uid),
                "body": clean_spark_content(str(content)),
                "category": category,
                "tags": tags,
                "todo_id": fields.get("toDoId"),
                "todo_created_at": fields.get("originallyCreated"),
            }
        )
    return {"sparks": sparks, "skipped": skipped}


@workflow("airtable-import-sparks", "airtable/import-sparks", name="Import Sparks from Airtable")
async def airtable_import_sparks(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    tenant_id = ctx.tenant_id
    api_key = ctx.data.get("api_key")
    base_id = ctx.data.get("base_id")
    table_id = ctx.data.get("table_id")
    if not all([tenant_id, api_key, base_id, table_id]):
        return failed("Missing required parameters", **EMPTY_RESULT)

    async def fetch_records() -> List[Dict[str, Any]]:
        return await deps.airtable.list_records(api_key, base_id, table_id)

    async def process() -> Dict[str, Any]:
        result = process_records(records)
        ctx.logger.info(
            f"Processed {len(records)} records: {len(result['sparks'])} valid, "
            f"skipped {result['skipped']}"
        )
        return result

    async def check_duplicates() -> Dict[str, Any]:
        existing: set[str] = set()
        uids = [spark["uid"] for spark in sparks]
        for batch in chunked(uids, DUPLICATE_BATCH_SIZE):
            existing |= await deps.store.find_spark_uids(tenant_id, batch)
        fresh = [spark for spark in sparks if spark["uid"] not in existing]
        ctx.logger.info(f"Found {len(existing)} duplicates, {len(fresh)} new sparks")
        return {"sparks": fresh, "duplicates": len(sparks) - len(fresh)}

    async def import_sparks() -> List[Dict[str, Any]]:
        imported = []
        for spark in new_sparks:
            try:
                row = await deps.store.insert_spark(
                    tenant_id,
                    body=spark["body"],
                    uid=spark["uid"],
                    todo_id=spark["todo_id"],
                    todo_created_at=spark["todo_created_at"],
                )
            except StoreError as exc:
                # Uids were checked before this step, so a stored one was
                # inserted by an earlier attempt of this run.
                row = await deps.store.get_spark_by_uid(tenant_id, spark["uid"])
                if row is None:
                    ctx.logger.error(f"Error inserting spark {spark['uid']}: {exc}")
                    continue
                ctx.logger.info(f"Spark {spark['uid']} was stored by an earlier attempt")
            imported.append({**spark, "id": row.id})
        return imported

    async def add_categories_and_tags() -> Dict[str, List[str]]:
        new_categories: List[str] = []
        new_tags: List[str] = []
        categories: Dict[str, str] = {}
        tags: Dict[str, str] = {}
        for spark in imported:
            slug = category_slug(spark["category"])
            if slug not in categories:
                category = await deps.store.find_category(tenant_id, slug=slug)
                if category is None:
                    category = await deps.store.create_category(
                        tenant_id, spark["category"].strip(), slug
                    )
                    new_categories.append(category.name)
                categories[slug] = category.id
            await deps.store.link_spark_category(
                spark["id"], categories[slug], created_by=CREATED_BY
            )

            for name in spark["tags"]:
                if name not in tags:
                    tag = await deps.store.find_tag(tenant_id, name)
                    if tag is None:
                        (tag,) = await deps.store.create_tags(
                            tenant_id, [name], source=CREATED_BY
                        )
                        new_tags.append(name)
                    tags[name] = tag.id
                await deps.store.link_spark_tag(
                    spark["id"], tags[name], created_by=CREATED_BY
                )
        return {"newCategories": new_categories, "newTags": new_tags}

    async def update_import_status() -> Dict[str, Any]:
        last_import = {
            "date": deps.now().isoformat(),
            "imported": len(imported),
            "skipped": {"duplicates": duplicates, **skipped},
            "baseId": base_id,
            "tableId": table_id,
            "newCategories": created["newCategories"],
            "newTags": created["newTags"],
        }
        await deps.update_integration(tenant_id, "airtable", lastImport=last_import)
        return last_import

    try:
        records = await ctx.step.run("fetch-data-from-airtable", fetch_records)
        if not records:
            return failed(
                "Failed to fetch data from Airtable or no records found", **EMPTY_RESULT
            )
        processed = await ctx.step.run("process-airtable-data", process)
        sparks, skipped = processed["sparks"], processed["skipped"]
        checked = await ctx.step.run("check-for-duplicates", check_duplicates)
        new_sparks, duplicates = checked["sparks"], checked["duplicates"]
        imported = await ctx.step.run("import-sparks", import_sparks)
        created = await ctx.step.run("add-categories-and-tags", add_categories_and_tags)
        await ctx.step.run("update-import-status", update_import_status)
    except StepFailed as exc:
        return failed(exc.cause, **EMPTY_RESULT)

    ctx.logger.info(f"Imported {len(imported)} sparks from Airtable")
    return succeeded(
        totalRecords=len(records),
        validRecords=len(sparks),
        importedRecords=len(imported),
        skippedDuplicates=duplicates,
        skippedNoUid=skipped["noUid"],
        skippedNoContent=skipped["noContent"],
        skippedNoCategory=skipped["noCategory"],
        skippedNoTags=skipped["noTags"],
        newCategories=len(created["newCategories"]),
        newTags=len(created["newTags"]),
    )
