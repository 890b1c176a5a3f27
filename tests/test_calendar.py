"""Calendar range view over production target dates."""

import pytest

PASSWORD = "Password123"


def _auth_headers(runtime, user):
    token = runtime.tokens.issue_access_token(
        runtime.tokens.build_claims(user_id=user.id, email=user.email, role=user.role)
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner(memory_store):
    return memory_store.create_user("owner@example.com", "hash", "Owner")


@pytest.fixture
def owner_headers(runtime, owner):
    return _auth_headers(runtime, owner)


def _create(client, headers, title, target_date=None):
    body = {"title": title}
    if target_date:
        body["target_date"] = target_date
    resp = client.post("/api/productions", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestCalendar:
    def test_requires_auth(self, client):
        resp = client.get("/api/calendar", params={"from": "2026-02-01", "to": "2026-02-28"})
        assert resp.status_code == 401

    def test_items_in_range_earliest_first(self, client, owner_headers):
        late = _create(client, owner_headers, "Late", "2026-02-20T09:00:00Z")
        early = _create(client, owner_headers, "Early", "2026-02-10T10:00:00Z")
        _create(client, owner_headers, "March", "2026-03-05T10:00:00Z")
        _create(client, owner_headers, "Undated")

        resp = client.get(
            "/api/calendar",
            params={"from": "2026-02-01", "to": "2026-02-28"},
            headers=owner_headers,
        )

        assert resp.status_code == 200
        items = resp.json()["data"]["items"]
        assert [item["id"] for item in items] == [early["id"], late["id"]]
        assert items[0] == {
            "id": early["id"],
            "title": "Early",
            "type": "production",
            "scheduled_at": "2026-02-10T10:00:00Z",
            "status": "idea",
            "route": f"/productions/{early['id']}",
        }

    def test_naive_target_dates_read_as_utc(self, client, owner_headers):
        created = _create(client, owner_headers, "Naive", "2026-02-10T10:00:00")
        resp = client.get(
            "/api/calendar",
            params={"from": "2026-02-10T00:00:00Z", "to": "2026-02-10T23:59:59Z"},
            headers=owner_headers,
        )
        assert [item["id"] for item in resp.json()["data"]["items"]] == [created["id"]]

    def test_scoped_to_caller(self, client, owner_headers, runtime, memory_store):
        _create(client, owner_headers, "Mine", "2026-02-10T10:00:00Z")
        other = memory_store.create_user("other@example.com", "hash", "Other")
        resp = client.get(
            "/api/calendar",
            params={"from": "2026-02-01", "to": "2026-02-28"},
            headers=_auth_headers(runtime, other),
        )
        assert resp.json()["data"]["items"] == []

    @pytest.mark.parametrize(
        "params",
        [
            {"from": "2026-02-28", "to": "2026-02-01"},
            {"from": "not-a-date", "to": "2026-02-01"},
            {"from": "2026-02-01"},
            {"from": "", "to": "2026-02-01"},
        ],
    )
    def test_bad_range(self, client, owner_headers, params):
        resp = client.get("/api/calendar", params=params, headers=owner_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
