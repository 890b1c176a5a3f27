"""Production pipeline and idea endpoints behind the auth gates."""

import pytest
from fastapi.testclient import TestClient

from cronostudio.app import create_app
from cronostudio.service.runtime import Runtime

PASSWORD = "Password123"


def _auth_headers(runtime, user):
    token = runtime.tokens.issue_access_token(
        runtime.tokens.build_claims(user_id=user.id, email=user.email, role=user.role)
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner(memory_store, auth_service):
    return memory_store.create_user(
        "owner@example.com", auth_service.hash_password(PASSWORD), "Owner"
    )


@pytest.fixture
def collaborator(memory_store, auth_service):
    return memory_store.create_user(
        "collab@example.com",
        auth_service.hash_password(PASSWORD),
        "Collaborator",
        role="collaborator",
    )


@pytest.fixture
def owner_headers(runtime, owner):
    return _auth_headers(runtime, owner)


@pytest.fixture
def collab_headers(runtime, collaborator):
    return _auth_headers(runtime, collaborator)


def _create(client, headers, **body):
    payload = {"title": "Episode 1", **body}
    resp = client.post("/api/productions", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestProductions:
    def test_requires_auth(self, client):
        assert client.get("/api/productions").status_code == 401
        assert client.post("/api/productions", json={"title": "x"}).status_code == 401

    def test_create_starts_at_idea(self, client, owner_headers):
        created = _create(client, owner_headers, priority=3)
        assert created["status"] == "idea"
        assert created["next_status"] == "scripting"
        assert created["priority"] == 3

    def test_list_sorted_by_priority(self, client, owner_headers):
        _create(client, owner_headers, title="low", priority=1)
        _create(client, owner_headers, title="high", priority=9)
        resp = client.get("/api/productions", headers=owner_headers)
        titles = [p["title"] for p in resp.json()["data"]["productions"]]
        assert titles == ["high", "low"]
        assert "pipeline" not in resp.json()["data"]

    def test_filter_and_stats(self, client, owner_headers):
        first = _create(client, owner_headers)
        _create(client, owner_headers, title="Episode 2")
        client.patch(
            f"/api/productions/{first['id']}", json={"status": "editing"}, headers=owner_headers
        )

        resp = client.get(
            "/api/productions", params={"status": "editing", "stats": "true"}, headers=owner_headers
        )
        data = resp.json()["data"]
        assert [p["id"] for p in data["productions"]] == [first["id"]]
        assert data["pipeline"] == {
            "idea": 1,
            "scripting": 0,
            "recording": 0,
            "editing": 1,
            "shorts": 0,
            "publishing": 0,
            "published": 0,
        }

    def test_invalid_status_filter(self, client, owner_headers):
        resp = client.get("/api/productions", params={"status": "bogus"}, headers=owner_headers)
        assert resp.status_code == 400

    def test_publish_sets_timestamp(self, client, owner_headers):
        created = _create(client, owner_headers)
        resp = client.patch(
            f"/api/productions/{created['id']}",
            json={"status": "published"},
            headers=owner_headers,
        )
        data = resp.json()["data"]
        assert data["status"] == "published"
        assert data["published_at"] is not None
        assert data["next_status"] is None

    def test_empty_patch(self, client, owner_headers):
        created = _create(client, owner_headers)
        resp = client.patch(f"/api/productions/{created['id']}", json={}, headers=owner_headers)
        assert resp.status_code == 400

    def test_priority_bounds(self, client, owner_headers):
        resp = client.post(
            "/api/productions", json={"title": "x", "priority": 11}, headers=owner_headers
        )
        assert resp.status_code == 400

    def test_delete(self, client, owner_headers):
        created = _create(client, owner_headers)
        path = f"/api/productions/{created['id']}"
        assert client.delete(path, headers=owner_headers).status_code == 200
        assert client.get(path, headers=owner_headers).status_code == 404


class TestOwnership:
    def test_foreign_production_looks_missing(self, client, owner_headers, collab_headers):
        """Someone else's production and a missing one get the same 404."""
        created = _create(client, owner_headers)
        foreign = client.get(f"/api/productions/{created['id']}", headers=collab_headers)
        missing = client.get("/api/productions/does-not-exist", headers=collab_headers)
        assert foreign.status_code == missing.status_code == 404
        assert foreign.json()["error"] == missing.json()["error"]

    def test_foreign_production_cannot_change(self, client, owner_headers, collab_headers):
        created = _create(client, owner_headers)
        path = f"/api/productions/{created['id']}"
        assert client.patch(path, json={"title": "mine"}, headers=collab_headers).status_code == 404
        assert client.delete(path, headers=collab_headers).status_code == 404
        assert client.get(path, headers=owner_headers).json()["data"]["title"] == "Episode 1"

    def test_lists_are_scoped(self, client, owner_headers, collab_headers):
        _create(client, owner_headers)
        resp = client.get("/api/productions", headers=collab_headers)
        assert resp.json()["data"]["productions"] == []

    def test_foreign_idea_link(self, client, owner_headers, collab_headers, runtime, collaborator):
        idea = runtime.store.create_idea(collaborator.id, "Their idea")
        resp = client.post(
            "/api/productions", json={"title": "x", "idea_id": idea.id}, headers=owner_headers
        )
        assert resp.status_code == 404


class TestIdeas:
    def test_owner_crud(self, client, owner_headers):
        created = client.post(
            "/api/ideas",
            json={"title": "Idea", "tags": [" tech ", "", "ai"]},
            headers=owner_headers,
        )
        assert created.status_code == 201
        idea = created.json()["data"]
        assert idea["status"] == "draft"
        assert idea["tags"] == ["tech", "ai"]

        updated = client.put(
            f"/api/ideas/{idea['id']}", json={"status": "approved"}, headers=owner_headers
        )
        assert updated.json()["data"]["status"] == "approved"

        listed = client.get("/api/ideas", headers=owner_headers)
        assert [i["id"] for i in listed.json()["data"]["ideas"]] == [idea["id"]]

        assert client.delete(f"/api/ideas/{idea['id']}", headers=owner_headers).status_code == 200

    def test_update_cleans_tags_like_create(self, client, owner_headers):
        idea = client.post("/api/ideas", json={"title": "Idea"}, headers=owner_headers).json()["data"]
        resp = client.put(
            f"/api/ideas/{idea['id']}",
            json={"tags": ["  edit  ", "   ", "x" * 80]},
            headers=owner_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["tags"] == ["edit", "x" * 50]

    def test_collaborator_cannot_write(self, client, collab_headers, runtime, collaborator):
        resp = client.post("/api/ideas", json={"title": "Nope"}, headers=collab_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert runtime.store.list_ideas(collaborator.id) == []

    def test_collaborator_can_read(self, client, collab_headers):
        resp = client.get("/api/ideas", headers=collab_headers)
        assert resp.status_code == 200

    def test_link_production_to_idea(self, client, owner_headers):
        idea = client.post("/api/ideas", json={"title": "Idea"}, headers=owner_headers).json()["data"]
        production = _create(client, owner_headers, idea_id=idea["id"])
        assert production["idea_id"] == idea["id"]


class TestRateLimitedWrites:
    def test_api_limit_headers(self, make_settings, memory_store, owner):
        runtime = Runtime(make_settings(rate_limit_enforce=True), store=memory_store)
        with TestClient(create_app(runtime)) as limited:
            resp = limited.post(
                "/api/productions", json={"title": "x"}, headers=_auth_headers(runtime, owner)
            )
        assert resp.status_code == 201
        assert resp.headers["X-RateLimit-Limit"] == "100"
        assert resp.headers["X-RateLimit-Remaining"] == "99"
