"""Integration tests for the FastAPI endpoints.

Uses TestClient to verify HTTP-level behavior of the action lifecycle.
"""
from __future__ import annotations

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from misekai.cache import QueryCache
from misekai.models import Action, Base, DueDateHistory, Profile


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    monkeypatch.setenv("MISEKAI_DB_PATH", str(tmp_path / "lifespan.db"))
    engine, TestSession = test_db
    from misekai.app import app, db_session, get_cache

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    cache = QueryCache()
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_cache] = lambda: cache
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with a PM and two team members pre-seeded."""
    c, TestSession = client
    session = TestSession()
    pm = Profile(email="pm@misekai.dev", full_name="Pat", role="pm")
    alice = Profile(email="alice@misekai.dev", full_name="Alice")
    bob = Profile(email="bob@misekai.dev", full_name="Bob")
    session.add_all([pm, alice, bob])
    session.commit()
    ids = {"pm": pm.id, "alice": alice.id, "bob": bob.id}
    session.close()
    return c, TestSession, ids


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def _due(days: int = 7) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


def _create(c, user_id, **overrides):
    body = {"description": "Write the onboarding guide", "due_date": _due(), **overrides}
    return c.post("/api/actions", json=body, headers=_as(user_id))


class TestActionEndpoints:
    def test_create(self, seeded_client):
        c, _, ids = seeded_client
        resp = _create(c, ids["alice"])
        assert resp.status_code == 201
        data = resp.json()
        assert data["data"]["status"] == "on_target"
        assert data["data"]["completed_at"] is None
        assert data["autoBacklogged"] is False

    def test_create_unauthenticated(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.post("/api/actions", json={"description": "Nobody home", "due_date": _due()})
        assert resp.status_code == 401
        assert resp.json() == {"error": "You must be logged in to create an action"}

    def test_create_unknown_user(self, seeded_client):
        c, _, _ = seeded_client
        resp = _create(c, "00000000-0000-0000-0000-000000000000")
        assert resp.status_code == 401

    def test_create_validation(self, seeded_client):
        c, _, ids = seeded_client
        resp = _create(c, ids["alice"], description="abc")
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "Validation failed"
        assert body["fieldErrors"]["description"] == ["Description must be at least 5 characters"]

    def test_sixth_active_action_goes_to_backlog(self, seeded_client):
        c, _, ids = seeded_client
        for i in range(5):
            assert _create(c, ids["alice"], description=f"Active item {i}").json()["autoBacklogged"] is False
        resp = _create(c, ids["alice"], description="Overflow item")
        assert resp.json()["autoBacklogged"] is True
        assert resp.json()["data"]["status"] == "backlog"

    def test_pm_assigns_to_member(self, seeded_client):
        c, _, ids = seeded_client
        resp = _create(c, ids["pm"], owner_id=ids["bob"])
        assert resp.status_code == 201
        assert resp.json()["data"]["owner_id"] == ids["bob"]

    def test_get_and_visibility(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        assert c.get(f"/api/actions/{action_id}", headers=_as(ids["alice"])).status_code == 200
        assert c.get(f"/api/actions/{action_id}", headers=_as(ids["pm"])).status_code == 200
        resp = c.get(f"/api/actions/{action_id}", headers=_as(ids["bob"]))
        assert resp.status_code == 404
        assert resp.json()["error"] == "Action not found"

    def test_update_status_complete(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        resp = c.put(f"/api/actions/{action_id}", json={"status": "complete"}, headers=_as(ids["alice"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["completed_at"] is not None

        resp = c.put(f"/api/actions/{action_id}", json={"status": "on_target"}, headers=_as(ids["alice"]))
        assert resp.json()["data"]["completed_at"] is None

    def test_update_due_date_records_history(self, seeded_client):
        c, TestSession, ids = seeded_client
        session = TestSession()
        action = Action(description="Legacy action", owner_id=ids["alice"],
                        due_date=date(2025, 1, 1), status="on_target")
        session.add(action)
        session.commit()
        action_id = action.id
        session.close()

        resp = c.put(f"/api/actions/{action_id}", json={"due_date": "2025-01-15"}, headers=_as(ids["alice"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["due_date"] == "2025-01-15"

        history = c.get(f"/api/actions/{action_id}/history", headers=_as(ids["alice"])).json()["data"]
        assert len(history) == 1
        assert history[0]["old_due_date"] == "2025-01-01"
        assert history[0]["new_due_date"] == "2025-01-15"
        assert history[0]["changed_by"] == ids["alice"]

        session = TestSession()
        assert len(session.execute(select(DueDateHistory)).scalars().all()) == 1
        session.close()

    def test_delayed_with_reason(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        resp = c.put(f"/api/actions/{action_id}", json={
            "status": "delayed",
            "delayReason": {"reason": "Waiting for design sign-off", "category": "people"},
        }, headers=_as(ids["alice"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "delayed"
        reasons = c.get(f"/api/actions/{action_id}/delay-reasons", headers=_as(ids["alice"])).json()["data"]
        assert len(reasons) == 1
        assert reasons[0]["category"] == "people"

    def test_short_delay_reason_rejected(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        resp = c.put(f"/api/actions/{action_id}", json={
            "status": "delayed", "delayReason": {"reason": "soon"},
        }, headers=_as(ids["alice"]))
        assert resp.status_code == 422
        assert "delayReason.reason" in resp.json()["fieldErrors"]
        detail = c.get(f"/api/actions/{action_id}", headers=_as(ids["alice"])).json()
        assert detail["data"]["status"] == "on_target"

    def test_delete(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        resp = c.delete(f"/api/actions/{action_id}", headers=_as(ids["alice"]))
        assert resp.status_code == 200
        assert resp.json() == {}
        assert c.get(f"/api/actions/{action_id}", headers=_as(ids["alice"])).status_code == 404

    def test_delete_complete_rejected(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        c.put(f"/api/actions/{action_id}", json={"status": "complete"}, headers=_as(ids["alice"]))
        resp = c.delete(f"/api/actions/{action_id}", headers=_as(ids["alice"]))
        assert resp.status_code == 409
        assert resp.json()["error"] == "Cannot delete a completed action"
        assert c.get(f"/api/actions/{action_id}", headers=_as(ids["alice"])).json()["data"]["status"] == "complete"


class TestListEndpoints:
    def test_list_and_counts(self, seeded_client):
        c, _, ids = seeded_client
        for i in range(3):
            _create(c, ids["alice"], description=f"Listed item {i}", due_date=_due(i + 1))
        _create(c, ids["bob"], description="Bob's item")

        resp = c.get("/api/actions", params={"sort_order": "desc", "limit": 2}, headers=_as(ids["alice"]))
        assert resp.status_code == 200
        body = resp.json()["data"]
        assert body["meta"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}
        assert body["data"][0]["due_date"] == _due(3)

        counts = c.get("/api/actions/counts", headers=_as(ids["pm"])).json()["data"]
        assert counts == {"activeCount": 4, "backlogCount": 0}

    def test_counts_refresh_after_write(self, seeded_client):
        c, _, ids = seeded_client
        assert c.get("/api/actions/counts", headers=_as(ids["alice"])).json()["data"]["activeCount"] == 0
        _create(c, ids["alice"])
        assert c.get("/api/actions/counts", headers=_as(ids["alice"])).json()["data"]["activeCount"] == 1

    def test_backlog_tab(self, seeded_client):
        c, _, ids = seeded_client
        action_id = _create(c, ids["alice"]).json()["data"]["id"]
        c.put(f"/api/actions/{action_id}", json={"status": "backlog"}, headers=_as(ids["alice"]))
        resp = c.get("/api/actions", params={"tab": "backlog"}, headers=_as(ids["alice"]))
        assert [a["id"] for a in resp.json()["data"]["data"]] == [action_id]

    def test_invalid_sort(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get("/api/actions", params={"sort_by": "owner"}, headers=_as(ids["alice"]))
        assert resp.status_code == 422
        assert "sort_by" in resp.json()["fieldErrors"]


class TestTeamEndpoints:
    def test_team_members(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get("/api/team-members", headers=_as(ids["alice"]))
        assert [m["full_name"] for m in resp.json()["data"]] == ["Alice", "Bob", "Pat"]

    def test_wip(self, seeded_client):
        c, _, ids = seeded_client
        for i in range(5):
            _create(c, ids["alice"], description=f"WIP item {i}")
        data = c.get("/api/wip", headers=_as(ids["alice"])).json()["data"]
        assert data["active_count"] == 5
        assert data["at_limit"] is True
        other = c.get("/api/wip", params={"owner_id": ids["alice"]}, headers=_as(ids["pm"]))
        assert other.json()["data"]["active_count"] == 5


class TestRequestShape:
    def test_unparseable_page(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get("/api/actions", params={"page": "abc"}, headers=_as(ids["alice"]))
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "Validation failed"
        assert "page" in body["fieldErrors"]
        assert "detail" not in body

    def test_page_below_one(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get("/api/actions", params={"page": 0}, headers=_as(ids["alice"]))
        assert resp.status_code == 422
        assert "page" in resp.json()["fieldErrors"]

    def test_malformed_json_body(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(
            "/api/actions", content="{not json",
            headers={**_as(ids["alice"]), "Content-Type": "application/json"},
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "Validation failed"
        assert "payload" in body["fieldErrors"]
        assert "detail" not in body

    def test_timestamps_match_between_write_and_read(self, seeded_client):
        c, _, ids = seeded_client
        created = _create(c, ids["alice"]).json()["data"]
        fetched = c.get(f"/api/actions/{created['id']}", headers=_as(ids["alice"])).json()["data"]
        assert fetched["created_at"] == created["created_at"]
        assert created["created_at"].endswith("Z")

        completed = c.put(f"/api/actions/{created['id']}", json={"status": "complete"},
                          headers=_as(ids["alice"])).json()["data"]
        fetched = c.get(f"/api/actions/{created['id']}", headers=_as(ids["alice"])).json()["data"]
        assert fetched["completed_at"] == completed["completed_at"]
        assert fetched["completed_at"].endswith("Z")


def test_default_session_uses_configured_database(tmp_path, monkeypatch):
    monkeypatch.setenv("MISEKAI_DB_PATH", str(tmp_path / "default.db"))
    from misekai.app import app, get_cache
    from misekai.db import session_scope

    app.dependency_overrides[get_cache] = lambda: QueryCache()
    try:
        with TestClient(app) as c:
            with session_scope() as session:
                profile = Profile(email="solo@misekai.dev", full_name="Solo")
                session.add(profile)
                session.commit()
                user_id = profile.id
            assert _create(c, user_id).status_code == 201
            listed = c.get("/api/actions", headers=_as(user_id)).json()["data"]
            assert listed["meta"]["total"] == 1
    finally:
        app.dependency_overrides.clear()
    assert (tmp_path / "default.db").exists()
