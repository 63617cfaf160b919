"""Request boundary for action operations.

Each handler resolves the caller, validates the raw payload, runs the
service call and converts every failure into an :class:`ActionResult`.
Nothing raised below this layer escapes it.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

import pydantic
from sqlalchemy.orm import Session

from misekai import services
from misekai.auth import CurrentUser, resolve_current_user
from misekai.cache import QueryCache, counts_key, detail_key, list_key
from misekai.errors import (
    AuthenticationRequired, BusinessRuleViolation, MisekaiError, NotFound, StorageError,
    ValidationError,
)
from misekai.schemas import (
    ActionCreate,
    ActionOut,
    ActionResult,
    ActionsQuery,
    ActionUpdate,
    DelayReasonOut,
    DueDateHistoryOut,
    PaginatedActions,
    TabCounts,
    TeamMemberOut,
    WipStatus,
)

log = logging.getLogger(__name__)


def group_field_errors(details: Iterable[dict]) -> dict[str, list[str]]:
    """Group pydantic error details by dotted field path."""
    errors: dict[str, list[str]] = {}
    for err in details:
        path = ".".join(str(part) for part in err["loc"]) or "payload"
        if err["type"] == "value_error" and "error" in err.get("ctx", {}):
            message = str(err["ctx"]["error"])
        else:
            message = err["msg"]
        errors.setdefault(path, []).append(message)
    return errors


def field_errors_from(exc: pydantic.ValidationError) -> dict[str, list[str]]:
    return group_field_errors(exc.errors())


def _validate(model: type[pydantic.BaseModel], payload: Any):
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(field_errors=field_errors_from(exc)) from exc


def _dump_action(action) -> dict:
    return ActionOut.model_validate(action).model_dump(mode="json")


def _failure(exc: MisekaiError, verb: str) -> ActionResult:
    if isinstance(exc, ValidationError):
        return ActionResult(error=str(exc), field_errors=exc.field_errors, status_code=exc.status_code)
    if isinstance(exc, AuthenticationRequired):
        message = f"You must be logged in to {verb} an action"
    elif isinstance(exc, NotFound):
        message = "Action not found"
    else:
        message = str(exc)
    return ActionResult(error=message, status_code=exc.status_code)


def _run(verb: str, fn: Callable[[], ActionResult]) -> ActionResult:
    try:
        return fn()
    except MisekaiError as exc:
        if isinstance(exc, StorageError):
            log.error("%s action failed: %s", verb.capitalize(), exc)
        else:
            log.debug("%s action rejected: %s", verb.capitalize(), exc)
        return _failure(exc, verb)
    except Exception:
        log.exception("Unexpected error during %s action", verb)
        return ActionResult(error=f"Failed to {verb} action", status_code=500)


def _require_id(action_id: str | None) -> str:
    action_id = (action_id or "").strip()
    if not action_id:
        raise MisekaiError("Action ID is required")
    return action_id


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def create_action(
    session: Session, user_id: str | None, payload: Any, cache: QueryCache | None = None,
) -> ActionResult:
    def run() -> ActionResult:
        user = resolve_current_user(session, user_id)
        body = _validate(ActionCreate, payload)
        action, auto_backlogged = services.create_action(session, user, body)
        if cache is not None:
            cache.invalidate_after_write(action.id)
        return ActionResult(data=_dump_action(action), auto_backlogged=auto_backlogged, status_code=201)

    return _run("create", run)


def update_action(
    session: Session, user_id: str | None, action_id: str | None, payload: Any,
    cache: QueryCache | None = None,
) -> ActionResult:
    def run() -> ActionResult:
        target = _require_id(action_id)
        user = resolve_current_user(session, user_id)
        body = _validate(ActionUpdate, payload)
        try:
            action = services.update_action(session, user, target, body)
        except StorageError:
            # The action row may already be committed when a follow-up step fails.
            if cache is not None:
                cache.invalidate_after_write(target)
            raise
        if cache is not None:
            cache.invalidate_after_write(action.id)
        return ActionResult(data=_dump_action(action))

    return _run("update", run)


def delete_action(
    session: Session, user_id: str | None, action_id: str | None, cache: QueryCache | None = None,
) -> ActionResult:
    def run() -> ActionResult:
        target = _require_id(action_id)
        user = resolve_current_user(session, user_id)
        services.delete_action(session, user, target)
        if cache is not None:
            cache.invalidate_after_write(target)
        return ActionResult()

    return _run("delete", run)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _cached(cache: QueryCache | None, key: tuple, loader: Callable[[], Any]) -> Any:
    return loader() if cache is None else cache.get_or_load(key, loader)


def list_actions(
    session: Session, user_id: str | None, params: Any = None, cache: QueryCache | None = None,
) -> ActionResult:
    def run() -> ActionResult:
        user = resolve_current_user(session, user_id)
        query = _validate(ActionsQuery, params or {})

        def load() -> dict:
            page = services.list_actions(session, user, query)
            return PaginatedActions.model_validate(page, from_attributes=True).model_dump(mode="json")

        return ActionResult(data=_cached(cache, list_key(user.id, query.model_dump()), load))

    return _run("fetch", run)


def get_action(
    session: Session, user_id: str | None, action_id: str | None, cache: QueryCache | None = None,
) -> ActionResult:
    def run() -> ActionResult:
        target = _require_id(action_id)
        user = resolve_current_user(session, user_id)
        data = _cached(
            cache, detail_key(target, user.id),
            lambda: _dump_action(services.get_action(session, user, target)),
        )
        return ActionResult(data=data)

    return _run("fetch", run)


def tab_counts(session: Session, user_id: str | None, cache: QueryCache | None = None) -> ActionResult:
    def run() -> ActionResult:
        user = resolve_current_user(session, user_id)
        data = _cached(
            cache, counts_key(user.id),
            lambda: TabCounts(**services.tab_counts(session, user)).model_dump(by_alias=True),
        )
        return ActionResult(data=data)

    return _run("fetch", run)


def due_date_history(session: Session, user_id: str | None, action_id: str | None) -> ActionResult:
    def run() -> ActionResult:
        target = _require_id(action_id)
        user = resolve_current_user(session, user_id)
        rows = services.list_due_date_history(session, user, target)
        return ActionResult(data=[DueDateHistoryOut.model_validate(r).model_dump(mode="json") for r in rows])

    return _run("fetch", run)


def delay_reasons(session: Session, user_id: str | None, action_id: str | None) -> ActionResult:
    def run() -> ActionResult:
        target = _require_id(action_id)
        user = resolve_current_user(session, user_id)
        rows = services.list_delay_reasons(session, user, target)
        return ActionResult(data=[DelayReasonOut.model_validate(r).model_dump(mode="json") for r in rows])

    return _run("fetch", run)


def team_members(session: Session, user_id: str | None) -> ActionResult:
    def run() -> ActionResult:
        resolve_current_user(session, user_id)
        rows = services.active_team_members(session)
        return ActionResult(data=[TeamMemberOut.model_validate(p).model_dump() for p in rows])

    return _run("fetch", run)


def wip(session: Session, user_id: str | None, owner_id: str | None = None) -> ActionResult:
    """WIP status for the caller, or for *owner_id* when the caller is a PM."""
    def run() -> ActionResult:
        user: CurrentUser = resolve_current_user(session, user_id)
        target = owner_id or user.id
        if target != user.id and not user.is_pm:
            raise BusinessRuleViolation("Only project managers can view other users' WIP")
        return ActionResult(data=WipStatus(**services.wip_status(session, target)).model_dump())

    return _run("fetch", run)
