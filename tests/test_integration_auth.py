"""End-to-end auth flows through the HTTP API with the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from cronostudio.app import create_app
from cronostudio.service.auth import GENERIC_RESET_MESSAGE
from cronostudio.service.runtime import Runtime

EMAIL = "owner@example.com"
PASSWORD = "Password123"


def _register(client, email=EMAIL, password=PASSWORD, name="Studio Owner"):
    return client.post(
        "/api/auth/register", json={"email": email, "password": password, "name": name}
    )


def _set_cookie_headers(resp):
    return resp.headers.get_list("set-cookie")


def _cookie_header(resp, name):
    return next(h for h in _set_cookie_headers(resp) if h.startswith(f"{name}="))


@pytest.fixture
def registered(client):
    resp = _register(client)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestRegister:
    def test_register_returns_session(self, client):
        resp = _register(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["email"] == EMAIL
        assert data["user"]["role"] == "owner"
        assert data["user"]["email_verified"] is False
        assert data["token_type"] == "Bearer"
        assert data["access_token"] and data["refresh_token"]

    def test_sets_hardened_cookies(self, client):
        resp = _register(client)
        for name in ("access_token", "refresh_token"):
            header = _cookie_header(resp, name).lower()
            assert "httponly" in header
            assert "samesite=strict" in header
            assert "path=/" in header
        assert "max-age=604800" in _cookie_header(resp, "access_token").lower()
        assert "max-age=2592000" in _cookie_header(resp, "refresh_token").lower()

    def test_duplicate_email(self, client, registered):
        resp = _register(client, email="OWNER@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password(self, client):
        resp = _register(client, password="alllowercase")
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any(d["field"] == "password" for d in error["details"])

    def test_invalid_email(self, client):
        resp = _register(client, email="not-an-email")
        assert resp.status_code == 400


class TestLogin:
    def test_login_success(self, client, registered):
        client.cookies.clear()
        resp = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["id"] == registered["user"]["id"]
        assert _cookie_header(resp, "access_token")

    def test_wrong_password_and_unknown_email_match(self, client, registered):
        wrong = client.post("/api/auth/login", json={"email": EMAIL, "password": "Wrong12345"})
        unknown = client.post(
            "/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_short_password_is_validation_error(self, client):
        resp = client.post("/api/auth/login", json={"email": EMAIL, "password": "abc"})
        assert resp.status_code == 400


class TestMe:
    def test_cookie_session(self, client, registered):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == EMAIL

    def test_bearer_header(self, client, registered):
        client.cookies.clear()
        resp = client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {registered['access_token']}"}
        )
        assert resp.status_code == 200

    def test_anonymous(self, client):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_deleted_user_with_live_token(self, client, registered):
        """A still-valid access token for a deleted account answers 404."""
        token = registered["access_token"]
        assert client.delete("/api/auth/profile").status_code == 200
        client.cookies.clear()
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 404


class TestProfile:
    def test_update_name(self, client, registered):
        resp = client.patch("/api/auth/profile", json={"name": "New Name"})
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "New Name"

    def test_empty_update_rejected(self, client, registered):
        assert client.patch("/api/auth/profile", json={}).status_code == 400

    def test_email_taken(self, client, registered):
        other = TestClient(client.app)
        _register(other, email="second@example.com")
        resp = client.patch("/api/auth/profile", json={"email": "second@example.com"})
        assert resp.status_code == 409

    def test_delete_clears_cookies(self, client, registered):
        resp = client.delete("/api/auth/profile")
        assert resp.status_code == 200
        assert "max-age=0" in _cookie_header(resp, "access_token").lower()


class TestRefreshAndLogout:
    def test_refresh_with_cookie_rotates(self, client, registered):
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 200
        new_refresh = resp.json()["data"]["refresh_token"]
        assert new_refresh != registered["refresh_token"]

        client.cookies.clear()
        replay = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert replay.status_code == 401

    def test_refresh_with_body(self, client, registered):
        client.cookies.clear()
        resp = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert resp.status_code == 200

    def test_refresh_without_token(self, client):
        assert client.post("/api/auth/refresh").status_code == 401

    def test_logout_revokes_and_clears(self, client, registered):
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in _cookie_header(resp, "refresh_token").lower()

        client.cookies.clear()
        again = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert again.status_code == 401

    def test_logout_twice(self, client, registered):
        token = registered["refresh_token"]
        client.cookies.clear()
        first = client.post("/api/auth/logout", json={"refresh_token": token})
        second = client.post("/api/auth/logout", json={"refresh_token": token})
        assert first.status_code == second.status_code == 200


class TestPasswordChange:
    def test_wrong_current_password(self, client, registered):
        resp = client.post(
            "/api/auth/password",
            json={"current_password": "Nope12345", "new_password": "Another456"},
        )
        assert resp.status_code == 400

    def test_change_keeps_current_session(self, client, registered):
        resp = client.post(
            "/api/auth/password",
            json={"current_password": PASSWORD, "new_password": "Another456"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 0
        assert client.post("/api/auth/refresh").status_code == 200

        old = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert old.status_code == 401
        new = client.post("/api/auth/login", json={"email": EMAIL, "password": "Another456"})
        assert new.status_code == 200


class TestPasswordReset:
    def test_generic_message_for_any_email(self, client, registered, email_outbox):
        known = client.post("/api/auth/request-password-reset", json={"email": EMAIL})
        unknown = client.post(
            "/api/auth/request-password-reset", json={"email": "ghost@example.com"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {
            "message": GENERIC_RESET_MESSAGE
        }
        assert [to for to, _ in email_outbox.password_resets] == [EMAIL]

    def test_reset_then_replay(self, client, registered, email_outbox):
        client.post("/api/auth/request-password-reset", json={"email": EMAIL})
        _, token = email_outbox.password_resets[-1]

        ok = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "Reset789A"}
        )
        assert ok.status_code == 200

        replay = client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "Reset789B"}
        )
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "invalid_token"

        login = client.post("/api/auth/login", json={"email": EMAIL, "password": "Reset789A"})
        assert login.status_code == 200

    def test_reset_revokes_sessions(self, client, registered, email_outbox):
        client.post("/api/auth/request-password-reset", json={"email": EMAIL})
        _, token = email_outbox.password_resets[-1]
        client.post(
            "/api/auth/reset-password", json={"token": token, "new_password": "Reset789A"}
        )
        client.cookies.clear()
        resp = client.post(
            "/api/auth/refresh", json={"refresh_token": registered["refresh_token"]}
        )
        assert resp.status_code == 401


class TestEmailVerification:
    def test_verify_then_replay(self, client, registered, email_outbox):
        _, token = email_outbox.verifications[-1]
        resp = client.post("/api/auth/verify-email", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["data"]["email_verified"] is True

        replay = client.post("/api/auth/verify-email", json={"token": token})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_resend(self, client, registered, email_outbox):
        resp = client.post("/api/auth/resend-verification")
        assert resp.json()["data"]["message"] == "Verification email sent"
        assert len(email_outbox.verifications) == 2

        _, token = email_outbox.verifications[-1]
        client.post("/api/auth/verify-email", json={"token": token})
        again = client.post("/api/auth/resend-verification")
        assert again.json()["data"]["message"] == "Email already verified"

    def test_unknown_token(self, client):
        resp = client.post("/api/auth/verify-email", json={"token": "made-up"})
        assert resp.status_code == 400


class TestAppShell:
    def test_security_headers(self, client):
        resp = client.get("/api/auth/me")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"
        assert "Strict-Transport-Security" not in resp.headers

    def test_request_id_round_trip(self, client):
        resp = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_login_rate_limit(self, make_settings, memory_store):
        runtime = Runtime(make_settings(rate_limit_enforce=True), store=memory_store)
        with TestClient(create_app(runtime)) as limited:
            statuses = [
                limited.post(
                    "/api/auth/login", json={"email": EMAIL, "password": PASSWORD}
                ).status_code
                for _ in range(6)
            ]
        assert statuses[:5] == [401] * 5
        assert statuses[5] == 429
