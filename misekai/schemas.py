"""Pydantic request/response schemas for the MiseKai API."""
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

ActionStatusLiteral = Literal["on_target", "delayed", "complete", "backlog"]
DelayCategoryLiteral = Literal["people", "process", "technical", "capacity", "external", "other"]

DESCRIPTION_MIN = 5
DESCRIPTION_MAX = 500
NOTES_MAX = 2000
DELAY_REASON_MIN = 10
DELAY_REASON_MAX = 500


def _check_description(v: str) -> str:
    if len(v) < DESCRIPTION_MIN:
        raise ValueError(f"Description must be at least {DESCRIPTION_MIN} characters")
    if len(v) > DESCRIPTION_MAX:
        raise ValueError(f"Description must not exceed {DESCRIPTION_MAX} characters")
    return v


def _check_notes(v: str) -> str:
    if len(v) > NOTES_MAX:
        raise ValueError(f"Notes must not exceed {NOTES_MAX} characters")
    return v


DescriptionStr = Annotated[str, AfterValidator(_check_description)]
NotesStr = Annotated[str, AfterValidator(_check_notes)]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class DelayReasonIn(BaseModel):
    reason: str
    category: DelayCategoryLiteral | None = None

    @field_validator("reason")
    @classmethod
    def reason_length(cls, v: str) -> str:
        if len(v) < DELAY_REASON_MIN:
            raise ValueError(f"Delay reason must be at least {DELAY_REASON_MIN} characters")
        if len(v) > DELAY_REASON_MAX:
            raise ValueError(f"Delay reason must not exceed {DELAY_REASON_MAX} characters")
        return v


class ActionCreate(BaseModel):
    description: DescriptionStr
    due_date: date
    notes: NotesStr | None = None
    owner_id: UUID | None = None

    @field_validator("due_date")
    @classmethod
    def due_date_not_in_past(cls, v: date) -> date:
        if v < date.today():
            raise ValueError("Due date cannot be in the past")
        return v


class ActionUpdate(BaseModel):
    """Partial update. Only fields present in the payload are applied;
    an explicit ``notes: null`` clears the notes."""

    model_config = ConfigDict(populate_by_name=True)

    description: DescriptionStr | None = None
    due_date: date | None = None
    notes: NotesStr | None = None
    status: ActionStatusLiteral | None = None
    owner_id: UUID | None = None
    delay_reason: DelayReasonIn | None = Field(None, alias="delayReason")


class ActionsQuery(BaseModel):
    status: Literal["on_target", "delayed", "complete", "backlog", "all"] = "all"
    tab: Literal["active", "backlog"] | None = None
    sort_by: Literal["due_date", "created_at", "status"] = "due_date"
    sort_order: Literal["asc", "desc"] = "asc"
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ActionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    description: str
    owner_id: str
    due_date: date
    status: ActionStatusLiteral
    notes: str | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DelayReasonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action_id: str
    reason: str
    category: DelayCategoryLiteral | None = None
    created_by: str | None = None
    created_at: datetime


class DueDateHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action_id: str
    old_due_date: date
    new_due_date: date
    changed_by: str
    created_at: datetime


class TeamMemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str | None = None
    email: str


class PaginationMeta(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class PaginatedActions(BaseModel):
    data: list[ActionOut]
    meta: PaginationMeta


class TabCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    active_count: int = Field(alias="activeCount")
    backlog_count: int = Field(alias="backlogCount")


class WipStatus(BaseModel):
    owner_id: str
    active_count: int
    limit: int
    at_limit: bool


class ActionResult(BaseModel):
    """Structured outcome of a handler call; handlers never raise."""

    model_config = ConfigDict(populate_by_name=True)

    data: Any | None = None
    error: str | None = None
    field_errors: dict[str, list[str]] | None = Field(None, alias="fieldErrors")
    auto_backlogged: bool | None = Field(None, alias="autoBacklogged")
    status_code: int = Field(200, exclude=True)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
