from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from misekai import handlers
from misekai.cache import QueryCache
from misekai.db import init_db, session_generator
from misekai.errors import ValidationError
from misekai.schemas import ActionResult


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="MiseKai",
    version="0.1.0",
    description=(
        "Team action tracking API. Create, update and track actions with due dates, "
        "statuses and delay reasons. Every endpoint returns the result shape "
        "{data?, error?, fieldErrors?, autoBacklogged?}. "
        "Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Actions", "description": "Create, list, update and delete actions."},
        {"name": "History", "description": "Due-date history and delay reasons of an action."},
        {"name": "Team", "description": "Team members and WIP status."},
    ],
)

query_cache = QueryCache()


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_user_id(x_user_id: str | None = Header(None)) -> str | None:
    return x_user_id


def get_cache() -> QueryCache:
    return query_cache


def _respond(result: ActionResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=result.status_code)


_REQUEST_PARTS = ("body", "query", "path", "header")


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    """Report unparseable query strings and bodies in the action result shape."""
    details = []
    for err in exc.errors():
        loc = tuple(err["loc"])
        if err["type"] == "json_invalid":
            loc = ()
        elif loc and loc[0] in _REQUEST_PARTS:
            loc = loc[1:]
        details.append({**err, "loc": loc})
    failure = ValidationError(field_errors=handlers.group_field_errors(details))
    return _respond(ActionResult(
        error=str(failure), field_errors=failure.field_errors, status_code=failure.status_code,
    ))


# ---------------------------------------------------------------------------
# Routes: Actions (fixed paths before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/actions", tags=["Actions"], summary="List actions with filtering, sorting, and pagination")
async def list_actions(
    status: str = Query("all", description="on_target, delayed, complete, backlog, or all"),
    tab: str | None = Query(None, description="active (on_target + delayed) or backlog"),
    sort_by: str = Query("due_date", description="due_date, created_at, or status"),
    sort_order: str = Query("asc", description="asc or desc"),
    page: int = Query(1),
    limit: int = Query(20),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    params = {
        "status": status, "tab": tab, "sort_by": sort_by,
        "sort_order": sort_order, "page": page, "limit": limit,
    }
    return _respond(handlers.list_actions(session, user_id, params, cache))


@app.get("/api/actions/counts", tags=["Actions"], summary="Count active and backlog actions")
async def tab_counts(
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    return _respond(handlers.tab_counts(session, user_id, cache))


@app.post("/api/actions", tags=["Actions"],
          summary="Create an action (routed to backlog when the owner is at the WIP limit)")
async def create_action(
    body: Any = Body(None),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    return _respond(handlers.create_action(session, user_id, body, cache))


@app.get("/api/actions/{action_id}", tags=["Actions"], summary="Get a single action")
async def get_action(
    action_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    return _respond(handlers.get_action(session, user_id, action_id, cache))


@app.put("/api/actions/{action_id}", tags=["Actions"],
         summary="Update an action (partial update with status side effects)")
async def update_action(
    action_id: str,
    body: Any = Body(None),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    return _respond(handlers.update_action(session, user_id, action_id, body, cache))


@app.delete("/api/actions/{action_id}", tags=["Actions"], summary="Delete an action that is not complete")
async def delete_action(
    action_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
    cache: QueryCache = Depends(get_cache),
):
    return _respond(handlers.delete_action(session, user_id, action_id, cache))


# ---------------------------------------------------------------------------
# Routes: History
# ---------------------------------------------------------------------------


@app.get("/api/actions/{action_id}/history", tags=["History"], summary="Due-date changes, newest first")
async def due_date_history(
    action_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    return _respond(handlers.due_date_history(session, user_id, action_id))


@app.get("/api/actions/{action_id}/delay-reasons", tags=["History"], summary="Delay reasons, newest first")
async def delay_reasons(
    action_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    return _respond(handlers.delay_reasons(session, user_id, action_id))


# ---------------------------------------------------------------------------
# Routes: Team
# ---------------------------------------------------------------------------


@app.get("/api/team-members", tags=["Team"], summary="Active team members for owner selection")
async def team_members(
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    return _respond(handlers.team_members(session, user_id))


@app.get("/api/wip", tags=["Team"], summary="Active action count against the WIP limit")
async def wip(
    owner_id: str | None = Query(None, description="Profile to inspect (PM only); defaults to the caller"),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    return _respond(handlers.wip(session, user_id, owner_id))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    host = os.environ.get("MISEKAI_HOST", "127.0.0.1")
    port = int(os.environ.get("MISEKAI_PORT", "8002"))
    uvicorn.run("misekai.app:app", host=host, port=port, reload=True)


if __name__ == "__main__":
    main()
