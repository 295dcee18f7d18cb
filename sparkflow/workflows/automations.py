"""Propose tagging and categorization automations for random highlights.

Both workflows only create a pending automation with its actions. Applying
the actions happens later, when a reviewer approves the automation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..contracts import Terminal, failed, succeeded
from ..errors import StepFailed
from ..runtime import ExecutionContext
from .deps import WorkflowDeps
from .registry import workflow

SAMPLE_SIZE = 5


@dataclass(frozen=True)
class LabelKind:
    """Describes the label an automation applies: a tag or a category."""

    kind: str
    label: str
    automation_name: str
    verb: str


TAG = LabelKind("tag", "automation-test", "Random Highlight Tagging", "tag")
CATEGORY = LabelKind(
    "category", "Automation Test", "Random Highlight Categorization", "categorize"
)


def build_actions(
    kind: LabelKind, highlight_ids: List[str], label_id: Optional[str]
) -> List[Dict[str, Any]]:
    """Build the action list of a labelling automation.

    When the label does not exist yet a ``create_<kind>`` action comes first
    and each ``add_<kind>`` action refers to the label by name.
    """
    name_key, id_key = f"{kind.kind}_name", f"{kind.kind}_id"
    actions: List[Dict[str, Any]] = []
    if not label_id:
        actions.append({"action": f"create_{kind.kind}", name_key: kind.label})
    for highlight_id in highlight_ids:
        if not highlight_id:
            continue
        action = {
            "action": f"add_{kind.kind}",
            "target": "highlight",
            "target_id": highlight_id,
            id_key: label_id or "",
        }
        if not label_id:
            action[name_key] = kind.label
        actions.append(action)
    return actions


async def _propose(
    ctx: ExecutionContext,
    deps: WorkflowDeps,
    kind: LabelKind,
    find_label: Callable[[str], Awaitable[Any]],
) -> Terminal:
    tenant_id = ctx.tenant_id
    if not tenant_id:
        return failed("Missing userId in event data")

    async def check_label() -> Dict[str, Any]:
        label = await find_label(tenant_id)
        return {"exists": label is not None, "id": label.id if label else None}

    async def select_highlights() -> List[Dict[str, Any]]:
        highlights = await deps.store.random_highlights(tenant_id, SAMPLE_SIZE)
        ctx.logger.info(f"Selected {len(highlights)} random highlights")
        return [
            {"id": h.id, "text": h.text or "", "book_id": h.book_id} for h in highlights
        ]

    async def create_automation() -> Dict[str, Any]:
        ids = [h["id"] for h in highlights]
        actions = build_actions(kind, ids, label["id"])
        automation = await deps.store.create_automation(
            tenant_id, kind.automation_name, actions, source="system"
        )
        return {"automationId": automation.id, "actionsCount": len(actions)}

    try:
        label = await ctx.step.run(f"check-{kind.kind}-exists", check_label)
        highlights = await ctx.step.run("select-random-highlights", select_highlights)
        if not highlights:
            return failed("No highlights found for this user")
        created = await ctx.step.run("create-context-automation", create_automation)
    except StepFailed as exc:
        return failed(exc.cause)

    ctx.logger.info(
        f"Created automation {created['automationId']} with "
        f"{created['actionsCount']} actions"
    )
    return succeeded(
        automationId=created["automationId"],
        highlightsCount=len(highlights),
        **{f"{kind.kind}Exists": label["exists"]},
        message=(
            f"Created context automation to {kind.verb} {len(highlights)} random "
            f'highlights with "{kind.label}" {kind.kind}'
        ),
    )


@workflow(
    "tag-random-highlights",
    "automations/tag-random-highlights",
    name="Tag Random Highlights",
)
async def tag_random_highlights(ctx: ExecutionContext, deps: WorkflowDeps) -> Terminal:
    return await _propose(
        ctx, deps, TAG, lambda tenant_id: deps.store.find_tag(tenant_id, TAG.label)
    )


@workflow(
    "categorize-random-highlights",
    "automations/categorize-random-highlights",
    name="Categorize Random Highlights",
)
async def categorize_random_highlights(
    ctx: ExecutionContext, deps: WorkflowDeps
) -> Terminal:
    return await _propose(
        ctx,
        deps,
        CATEGORY,
        lambda tenant_id: deps.store.find_category(tenant_id, name=CATEGORY.label),
    )
