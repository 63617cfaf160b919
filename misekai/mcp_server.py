from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from misekai import handlers
from misekai.db import init_db, session_scope
from misekai.models import ACTION_STATUSES, DELAY_CATEGORIES
from misekai.schemas import ActionResult
from misekai.services import WIP_LIMIT

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def misekai_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    if not _acting_user():
        log.warning("MISEKAI_USER_ID is not set; every tool call will require authentication")
    yield


mcp = FastMCP(
    "MiseKai",
    instructions=(
        "MiseKai tracks team actions with due dates, statuses and delay reasons. "
        "Start with get_tab_counts() for an overview, then list_actions() to browse, "
        "then get_action(id) for a single action. Tools act as the profile named "
        "by the MISEKAI_USER_ID environment variable."
    ),
    lifespan=misekai_lifespan,
    json_response=True,
)


def _acting_user() -> str:
    return os.environ.get("MISEKAI_USER_ID", "").strip()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("misekai://overview")
def misekai_overview() -> str:
    """Overview of MiseKai: data model, lifecycle rules, and result shape."""
    return json.dumps({
        "system": "MiseKai - team action tracking",
        "data_model": {
            "action": "Work item with description, owner, due date, status and notes.",
            "delay_reason": "Reason (10-500 chars) and optional category recorded when an action becomes delayed.",
            "due_date_history": "Append-only log of due date changes.",
        },
        "statuses": list(ACTION_STATUSES),
        "delay_categories": list(DELAY_CATEGORIES),
        "rules": [
            f"New actions go to backlog when the owner already has {WIP_LIMIT} on_target/delayed actions.",
            "Moving to complete stamps completed_at; moving away from complete clears it.",
            "Completed actions cannot be deleted.",
            "Only project managers can assign actions to other users.",
        ],
        "result_shape": "{data?, error?, fieldErrors?, autoBacklogged?}",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Actions
# ---------------------------------------------------------------------------


@mcp.tool()
def list_actions(
    status: str = "all", tab: str | None = None,
    sort_by: str = "due_date", sort_order: str = "asc",
    page: int = 1, limit: int = 20,
) -> dict:
    """List actions visible to the acting user.

    Args:
        status: on_target, delayed, complete, backlog, or all.
        tab: "active" (on_target + delayed) or "backlog". Takes precedence over status.
        sort_by: due_date, created_at, or status.
        sort_order: asc or desc.
        page: 1-based page number.
        limit: Page size (1-100).
    """
    params = {
        "status": status, "tab": tab, "sort_by": sort_by,
        "sort_order": sort_order, "page": page, "limit": limit,
    }
    with session_scope() as session:
        return handlers.list_actions(session, _acting_user(), params).to_dict()


@mcp.tool()
def get_action(action_id: str) -> dict:
    """Get a single action by id."""
    with session_scope() as session:
        return handlers.get_action(session, _acting_user(), action_id).to_dict()


@mcp.tool()
def create_action(
    description: str, due_date: str, notes: str | None = None, owner_id: str | None = None,
) -> dict:
    """Create an action. due_date is YYYY-MM-DD and cannot be in the past.

    owner_id assigns the action to another profile (project managers only).
    The result carries autoBacklogged=true when the owner was at the WIP limit.
    """
    payload = {"description": description, "due_date": due_date, "notes": notes, "owner_id": owner_id}
    with session_scope() as session:
        return handlers.create_action(session, _acting_user(), payload).to_dict()


@mcp.tool()
def update_action(
    action_id: str,
    description: str | None = None, due_date: str | None = None,
    notes: str | None = None, status: str | None = None, owner_id: str | None = None,
    delay_reason: str | None = None, delay_category: str | None = None,
    clear_notes: bool = False,
) -> dict:
    """Update an action. Only provided (non-null) arguments are applied.

    Pass clear_notes=True to remove the notes (it overrides notes).
    Setting status="delayed" may include delay_reason (10-500 chars) and
    delay_category (people, process, technical, capacity, external, other);
    a category without a reason is rejected.
    """
    payload = {k: v for k, v in {
        "description": description, "due_date": due_date, "notes": notes,
        "status": status, "owner_id": owner_id,
    }.items() if v is not None}
    if clear_notes:
        payload["notes"] = None
    if delay_reason is not None:
        payload["delayReason"] = {"reason": delay_reason, "category": delay_category}
    elif delay_category is not None:
        return ActionResult(
            error="Validation failed",
            field_errors={"delayReason.reason": ["Delay reason is required when a category is given"]},
            status_code=422,
        ).to_dict()
    with session_scope() as session:
        return handlers.update_action(session, _acting_user(), action_id, payload).to_dict()


@mcp.tool()
def delete_action(action_id: str) -> dict:
    """Delete an action. Completed actions cannot be deleted."""
    with session_scope() as session:
        return handlers.delete_action(session, _acting_user(), action_id).to_dict()


# ---------------------------------------------------------------------------
# Tools: Overview & History
# ---------------------------------------------------------------------------


@mcp.tool()
def get_tab_counts() -> dict:
    """Count of active (on_target + delayed) and backlog actions."""
    with session_scope() as session:
        return handlers.tab_counts(session, _acting_user()).to_dict()


@mcp.tool()
def get_due_date_history(action_id: str) -> dict:
    """Due date changes of an action, newest first."""
    with session_scope() as session:
        return handlers.due_date_history(session, _acting_user(), action_id).to_dict()


@mcp.tool()
def get_delay_reasons(action_id: str) -> dict:
    """Delay reasons recorded for an action, newest first."""
    with session_scope() as session:
        return handlers.delay_reasons(session, _acting_user(), action_id).to_dict()


@mcp.tool()
def list_team_members() -> dict:
    """Active team members that actions can be assigned to."""
    with session_scope() as session:
        return handlers.team_members(session, _acting_user()).to_dict()


@mcp.tool()
def get_wip_status(owner_id: str | None = None) -> dict:
    """Active action count against the WIP limit for the acting user (or owner_id, PM only)."""
    with session_scope() as session:
        return handlers.wip(session, _acting_user(), owner_id).to_dict()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the MiseKai MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
