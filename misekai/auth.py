"""Resolve the acting user's capabilities once per request.

Identity itself comes from the external authentication collaborator; this
module only turns a user id into a :class:`CurrentUser` with an ``is_pm``
flag that the service layer consults.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from misekai.errors import AuthenticationRequired
from misekai.models import Profile


@dataclass(frozen=True)
class CurrentUser:
    id: str
    is_pm: bool = False


def resolve_current_user(session: Session, user_id: str | None) -> CurrentUser:
    """Look up *user_id* and return its capabilities.

    Raises AuthenticationRequired when no id is given or the profile is
    unknown or not active.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise AuthenticationRequired()
    profile = session.execute(select(Profile).where(Profile.id == user_id)).scalars().first()
    if profile is None or profile.status != "active":
        raise AuthenticationRequired()
    return CurrentUser(id=profile.id, is_pm=profile.role == "pm")
