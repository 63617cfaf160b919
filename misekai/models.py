from __future__ import annotations

import uuid
from datetime import date, datetime, UTC

from sqlalchemy import Date, DateTime, ForeignKey, String, Text
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

ACTION_STATUSES = ("on_target", "delayed", "complete", "backlog")
ACTIVE_STATUSES = ("on_target", "delayed")
DELAY_CATEGORIES = ("people", "process", "technical", "capacity", "external", "other")


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored as UTC.

    SQLite keeps no offset, so values are normalised to UTC on the way in
    and read back with UTC attached.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    pass


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="team_member")  # team_member | pm
    status: Mapped[str] = mapped_column(String(20), default="active")  # active | pending | deactivated
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)

    actions: Mapped[list[Action]] = relationship("Action", back_populates="owner")


class Action(Base):
    __tablename__ = "actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="on_target", index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Non-null iff status == "complete"
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner: Mapped[Profile] = relationship("Profile", back_populates="actions")
    delay_reasons: Mapped[list[DelayReason]] = relationship(
        "DelayReason", back_populates="action", cascade="all, delete-orphan",
    )
    due_date_history: Mapped[list[DueDateHistory]] = relationship(
        "DueDateHistory", back_populates="action", cascade="all, delete-orphan",
    )


class DelayReason(Base):
    __tablename__ = "delay_reasons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    action_id: Mapped[str] = mapped_column(String(36), ForeignKey("actions.id"), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow)

    action: Mapped[Action] = relationship("Action", back_populates="delay_reasons")


class DueDateHistory(Base):
    __tablename__ = "due_date_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    action_id: Mapped[str] = mapped_column(String(36), ForeignKey("actions.id"), nullable=False, index=True)
    old_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    new_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=utcnow)

    action: Mapped[Action] = relationship("Action", back_populates="due_date_history")
