"""Action lifecycle rules shared by the HTTP API and the MCP server.

Functions here raise :class:`misekai.errors.MisekaiError` subclasses and
commit their own writes; :mod:`misekai.handlers` turns errors into results.
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from misekai.auth import CurrentUser
from misekai.errors import BusinessRuleViolation, NotFound, StorageError, ValidationError
from misekai.models import (
    ACTIVE_STATUSES, Action, DelayReason, DueDateHistory, Profile, utcnow,
)
from misekai.schemas import ActionCreate, ActionsQuery, ActionUpdate, DelayReasonIn

log = logging.getLogger(__name__)

WIP_LIMIT = 5

UPDATABLE_FIELDS = ("description", "due_date")

_SORT_COLUMNS = {
    "due_date": Action.due_date,
    "created_at": Action.created_at,
    "status": Action.status,
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def _commit(session: Session, failure: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(f"{failure}: {exc}") from exc


def _visible(stmt, user: CurrentUser):
    """Team members only see their own actions; PMs see everything."""
    if user.is_pm:
        return stmt
    return stmt.where(Action.owner_id == user.id)


def get_action(session: Session, user: CurrentUser, action_id: str) -> Action:
    stmt = _visible(select(Action).where(Action.id == action_id), user)
    try:
        action = session.execute(stmt).scalars().first()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to fetch action: {exc}") from exc
    if action is None:
        raise NotFound()
    return action


# ---------------------------------------------------------------------------
# WIP limit
# ---------------------------------------------------------------------------


def count_active_for_owner(session: Session, owner_id: str) -> int:
    """Number of the owner's actions that are on_target or delayed."""
    stmt = select(func.count()).select_from(Action).where(
        Action.owner_id == owner_id, Action.status.in_(ACTIVE_STATUSES),
    )
    try:
        return session.execute(stmt).scalar_one()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to get active count for user: {exc}") from exc


def should_auto_backlog(session: Session, owner_id: str, limit: int = WIP_LIMIT) -> bool:
    return count_active_for_owner(session, owner_id) >= limit


def wip_status(session: Session, owner_id: str) -> dict:
    count = count_active_for_owner(session, owner_id)
    return {
        "owner_id": owner_id, "active_count": count,
        "limit": WIP_LIMIT, "at_limit": count >= WIP_LIMIT,
    }


def _resolve_owner(session: Session, user: CurrentUser, owner_id) -> str:
    """Return the owner id for a create/reassign, enforcing PM-only assignment."""
    if owner_id is None:
        return user.id
    owner_id = str(owner_id)
    if owner_id == user.id:
        return owner_id
    if not user.is_pm:
        raise BusinessRuleViolation("Only project managers can assign actions to other users")
    owner = session.execute(select(Profile).where(Profile.id == owner_id)).scalars().first()
    if owner is None or owner.status != "active":
        raise ValidationError(field_errors={"owner_id": ["Owner must be an active team member"]})
    return owner_id


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def create_action(session: Session, user: CurrentUser, payload: ActionCreate) -> tuple[Action, bool]:
    """Create an action, routing it to backlog when the owner is at the WIP limit.

    Returns ``(action, auto_backlogged)``. The limit check and the insert are
    two separate statements, so concurrent creations may both pass the check.
    """
    owner_id = _resolve_owner(session, user, payload.owner_id)
    auto_backlogged = should_auto_backlog(session, owner_id)
    action = Action(
        description=payload.description,
        due_date=payload.due_date,
        notes=payload.notes,
        owner_id=owner_id,
        status="backlog" if auto_backlogged else "on_target",
        completed_at=None,
    )
    session.add(action)
    _commit(session, "Failed to create action")
    if auto_backlogged:
        log.info("Owner %s is at the WIP limit (%d); action %s sent to backlog",
                 owner_id, WIP_LIMIT, action.id)
    return action, auto_backlogged


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def apply_status_transition(action: Action, new_status: str, now: datetime | None = None) -> None:
    """Set the status and keep ``completed_at`` in step with it."""
    action.status = new_status
    if new_status == "complete":
        action.completed_at = now or utcnow()
    else:
        action.completed_at = None


def record_delay_reason(
    session: Session, action: Action, delay: DelayReasonIn, created_by: str,
) -> DelayReason:
    row = DelayReason(
        action_id=action.id, reason=delay.reason,
        category=delay.category, created_by=created_by,
    )
    session.add(row)
    _commit(session, "Failed to create delay reason")
    return row


def record_due_date_change(
    session: Session, action_id: str, old_due_date: date, new_due_date: date, changed_by: str,
) -> DueDateHistory:
    row = DueDateHistory(
        action_id=action_id, old_due_date=old_due_date,
        new_due_date=new_due_date, changed_by=changed_by,
    )
    session.add(row)
    _commit(session, "Failed to create due date history")
    return row


def update_action(
    session: Session, user: CurrentUser, action_id: str, payload: ActionUpdate,
) -> Action:
    """Apply a partial update and its lifecycle side effects.

    The action row is committed first. The due-date history entry and the
    delay reason are then written as separate steps; a failure in either is
    raised to the caller while the committed action row stays as updated.
    """
    action = get_action(session, user, action_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"delay_reason"})

    old_due_date = action.due_date
    old_status = action.status

    if "owner_id" in changes and changes["owner_id"] is not None:
        action.owner_id = _resolve_owner(session, user, changes["owner_id"])
    apply_updates(action, changes, UPDATABLE_FIELDS)
    if "notes" in changes:
        action.notes = changes["notes"]
    if changes.get("status") is not None:
        apply_status_transition(action, changes["status"])

    _commit(session, "Failed to update action")

    new_due_date = changes.get("due_date")
    if new_due_date is not None and new_due_date != old_due_date:
        try:
            record_due_date_change(session, action.id, old_due_date, new_due_date, user.id)
        except StorageError:
            log.warning("Action %s updated but its due date history was not recorded", action.id)
            raise

    entered_delayed = action.status == "delayed" and old_status != "delayed"
    if entered_delayed and payload.delay_reason is not None:
        try:
            record_delay_reason(session, action, payload.delay_reason, user.id)
        except StorageError:
            log.warning("Action %s marked delayed but its delay reason was not recorded", action.id)
            raise

    return action


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def delete_action(session: Session, user: CurrentUser, action_id: str) -> None:
    action = get_action(session, user, action_id)
    if action.status == "complete":
        raise BusinessRuleViolation("Cannot delete a completed action")
    session.delete(action)
    _commit(session, "Failed to delete action")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _filtered(stmt, query: ActionsQuery):
    if query.tab == "active":
        stmt = stmt.where(Action.status.in_(ACTIVE_STATUSES))
        if query.status in ACTIVE_STATUSES:
            stmt = stmt.where(Action.status == query.status)
    elif query.tab == "backlog":
        stmt = stmt.where(Action.status == "backlog")
    elif query.status != "all":
        stmt = stmt.where(Action.status == query.status)
    return stmt


def list_actions(session: Session, user: CurrentUser, query: ActionsQuery) -> dict:
    """Filtered, sorted page of actions plus ``{total, page, limit, pages}``."""
    stmt = _filtered(_visible(select(Action), user), query)
    column = _SORT_COLUMNS[query.sort_by]
    order = column.asc() if query.sort_order == "asc" else column.desc()
    try:
        total = session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        rows = session.execute(
            stmt.order_by(order, Action.id)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        ).scalars().all()
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to fetch actions: {exc}") from exc
    return {
        "data": list(rows),
        "meta": {
            "total": total, "page": query.page, "limit": query.limit,
            "pages": math.ceil(total / query.limit),
        },
    }


def tab_counts(session: Session, user: CurrentUser) -> dict[str, int]:
    def _count(*statuses: str) -> int:
        stmt = _visible(
            select(func.count()).select_from(Action).where(Action.status.in_(statuses)), user,
        )
        return session.execute(stmt).scalar_one()

    try:
        return {"activeCount": _count(*ACTIVE_STATUSES), "backlogCount": _count("backlog")}
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to get tab counts: {exc}") from exc


def list_due_date_history(session: Session, user: CurrentUser, action_id: str) -> list[DueDateHistory]:
    get_action(session, user, action_id)
    try:
        return list(session.execute(
            select(DueDateHistory)
            .where(DueDateHistory.action_id == action_id)
            .order_by(DueDateHistory.created_at.desc())
        ).scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to fetch due date history: {exc}") from exc


def list_delay_reasons(session: Session, user: CurrentUser, action_id: str) -> list[DelayReason]:
    get_action(session, user, action_id)
    try:
        return list(session.execute(
            select(DelayReason)
            .where(DelayReason.action_id == action_id)
            .order_by(DelayReason.created_at.desc())
        ).scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to fetch delay reasons: {exc}") from exc


def active_team_members(session: Session) -> list[Profile]:
    """Active profiles for the owner picker, ordered by name."""
    try:
        return list(session.execute(
            select(Profile).where(Profile.status == "active").order_by(Profile.full_name.asc())
        ).scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to fetch team members: {exc}") from exc
