"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/* routes.

These tests exercise the full stack: FastAPI routing -> rate limiter -> auth
dependency injection -> SessionManager -> stores -> response serialization.

Coverage:
  - register: 201 + cookies, 409 duplicate, 422 field-level validation
  - login: 200, identical 401 for unknown email and wrong password
  - me: bearer header, cookie fallback, 401 envelope
  - refresh: cookie and body sources, cookie precedence, 401 clears cookies
  - logout: access gate, revokes the refresh record, ignores tokens of other users
  - password change: ends every session
  - TOKEN_TRANSPORT=body: refresh_token in body, no cookies
  - rate limit: 429 with Retry-After
  - X-Request-ID propagation

Fixtures used (from conftest.py):
  - client: module TestClient with an empty cookie jar
  - api_client: (client, admin_token, admin_id)
"""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from core.config import get_settings

PASSWORD = "Passw0rdOK"


def _email() -> str:
    return f"user-{uuid.uuid4().hex[:10]}@example.com"


def _register(client: TestClient, email: str | None = None, password: str = PASSWORD):
    return client.post(
        "/api/v1/auth/register",
        json={"email": email or _email(), "name": "Test User", "password": password},
    )


def _cleared_cookies(resp) -> set[str]:
    """Names of cookies the response deletes (Max-Age=0)."""
    cleared = set()
    for header in resp.headers.get_list("set-cookie"):
        if "max-age=0" in header.lower():
            cleared.add(header.split("=", 1)[0])
    return cleared


class TestRegister:
    def test_register_returns_201_with_tokens(self, client: TestClient) -> None:
        email = _email()
        resp = _register(client, email)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["user"]["email"] == email
        assert data["user"]["role"] == "user"
        assert "password" not in data["user"] and "password_hash" not in data["user"]
        assert data["access_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == int(get_settings().access_token_ttl.total_seconds())
        assert "refresh_token" not in data  # cookie transport
        assert resp.cookies.get("access_token")
        assert resp.cookies.get("refresh_token")
        assert resp.headers["cache-control"] == "no-store"

    def test_register_normalises_email(self, client: TestClient) -> None:
        local = uuid.uuid4().hex[:10]
        resp = _register(client, f"  Mixed-{local}@Example.COM ")
        assert resp.status_code == 201, resp.text
        assert resp.json()["user"]["email"] == f"mixed-{local}@example.com"

    def test_duplicate_email_returns_409(self, client: TestClient) -> None:
        email = _email()
        assert _register(client, email).status_code == 201
        resp = _register(client, email.upper())
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password_returns_422_with_field_detail(self, client: TestClient) -> None:
        resp = _register(client, password="alllowercase1")
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any(item["field"] == "password" for item in error["detail"])

    def test_invalid_email_returns_422(self, client: TestClient) -> None:
        resp = _register(client, email="not-an-email")
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"][0]["field"] == "email"

    def test_single_character_name_accepted(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "name": " A ", "password": PASSWORD},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["user"]["name"] == "A"

    def test_blank_name_returns_422(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "name": "   ", "password": PASSWORD},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"][0]["field"] == "name"

    def test_unknown_field_rejected(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": _email(), "name": "Sneaky", "password": PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 422


class TestLogin:
    def test_login_success(self, client: TestClient) -> None:
        email = _email()
        user_id = _register(client, email).json()["user"]["id"]
        client.cookies.clear()
        resp = client.post("/api/v1/auth/login", json={"email": email.upper(), "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user"]["id"] == user_id
        assert data["access_token"]
        assert resp.cookies.get("refresh_token")

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, client: TestClient) -> None:
        email = _email()
        _register(client, email)
        client.cookies.clear()
        wrong = client.post("/api/v1/auth/login", json={"email": email, "password": "Wrongpass1"})
        unknown = client.post("/api/v1/auth/login", json={"email": _email(), "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.headers["cache-control"] == "no-store"


class TestMe:
    def test_me_with_bearer(self, client: TestClient) -> None:
        email = _email()
        token = _register(client, email).json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        body = resp.json()
        assert set(body) == {"id", "email", "name", "role"}
        assert body["email"] == email
        assert body["name"] == "Test User"
        assert body["role"] == "user"

    def test_me_bearer_scheme_is_case_insensitive(self, client: TestClient) -> None:
        token = _register(client).json()["access_token"]
        client.cookies.clear()
        for scheme in ("bearer", "BEARER"):
            resp = client.get("/api/v1/auth/me", headers={"Authorization": f"{scheme} {token}"})
            assert resp.status_code == 200, scheme

    def test_me_with_cookie(self, client: TestClient) -> None:
        email = _email()
        _register(client, email)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["email"] == email

    def test_me_without_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "unauthorized"
        assert body["request_id"]

    def test_me_with_garbage_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401

    def test_refresh_token_is_not_an_access_token(self, client: TestClient) -> None:
        _register(client)
        refresh_token = client.cookies.get("refresh_token")
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {refresh_token}"})
        assert resp.status_code == 401


class TestRefresh:
    def test_refresh_with_cookie(self, client: TestClient) -> None:
        original = _register(client).json()["access_token"]
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["access_token"] != original
        assert data["token_type"] == "bearer"
        assert resp.cookies.get("access_token") == data["access_token"]

    def test_refresh_with_body_token(self, client: TestClient) -> None:
        _register(client)
        refresh_token = client.cookies.get("refresh_token")
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert resp.status_code == 200, resp.text

    def test_refresh_with_camel_case_body_token(self, client: TestClient) -> None:
        _register(client)
        refresh_token = client.cookies.get("refresh_token")
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": refresh_token})
        assert resp.status_code == 200, resp.text

    def test_cookie_takes_precedence_over_body(self, client: TestClient) -> None:
        _register(client)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 200

    def test_missing_refresh_token_returns_401_and_clears_cookies(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert {"access_token", "refresh_token"} <= _cleared_cookies(resp)

    def test_invalid_refresh_token_returns_401_and_clears_cookies(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert {"access_token", "refresh_token"} <= _cleared_cookies(resp)

    def test_login_invalidates_previous_refresh_token(self, client: TestClient) -> None:
        email = _email()
        _register(client, email)
        old_refresh = client.cookies.get("refresh_token")
        client.cookies.clear()
        assert client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).status_code == 200
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": old_refresh})
        assert resp.status_code == 401


class TestLogout:
    def test_logout_requires_access_token(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 401

    def test_logout_revokes_refresh_token_and_clears_cookies(self, client: TestClient) -> None:
        _register(client)
        refresh_token = client.cookies.get("refresh_token")
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["message"]
        assert {"access_token", "refresh_token"} <= _cleared_cookies(resp)
        client.cookies.clear()
        again = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert again.status_code == 401

    def test_logout_with_body_token(self, client: TestClient) -> None:
        data = _register(client).json()
        refresh_token = client.cookies.get("refresh_token")
        client.cookies.clear()
        resp = client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": refresh_token},
            headers={"Authorization": f"Bearer {data['access_token']}"},
        )
        assert resp.status_code == 200
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token}).status_code == 401

    def test_logout_leaves_other_users_token_alone(self, client: TestClient) -> None:
        _register(client)
        victim_refresh = client.cookies.get("refresh_token")
        client.cookies.clear()
        caller = _register(client).json()
        client.cookies.clear()
        resp = client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": victim_refresh},
            headers={"Authorization": f"Bearer {caller['access_token']}"},
        )
        assert resp.status_code == 200
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": victim_refresh}).status_code == 200


class TestChangePassword:
    def test_change_password_ends_sessions(self, client: TestClient) -> None:
        email = _email()
        _register(client, email)
        refresh_token = client.cookies.get("refresh_token")
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "Brandnew99"},
        )
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token}).status_code == 401
        assert client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).status_code == 401
        assert client.post("/api/v1/auth/login", json={"email": email, "password": "Brandnew99"}).status_code == 200

    def test_wrong_current_password(self, client: TestClient) -> None:
        _register(client)
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "Notmine123", "new_password": "Brandnew99"},
        )
        assert resp.status_code == 401


class TestBodyTransport:
    def test_register_returns_refresh_token_without_cookies(self, client: TestClient, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "token_transport", "body")
        resp = _register(client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["refresh_token"]
        assert resp.headers.get_list("set-cookie") == []

        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.headers.get_list("set-cookie") == []


class TestRateLimit:
    def test_login_rate_limited(self, client: TestClient, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "auth_rate_limit", "2/minute")
        body = {"email": _email(), "password": PASSWORD}
        statuses = [client.post("/api/v1/auth/login", json=body).status_code for _ in range(3)]
        assert statuses[:2] == [401, 401]
        assert statuses[2] == 429
        resp = client.post("/api/v1/auth/login", json=body)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

    def test_register_and_refresh_are_rate_limited(self, client: TestClient, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "auth_rate_limit", "1/minute")
        assert _register(client).status_code == 201
        assert _register(client).status_code == 429
        assert client.post("/api/v1/auth/refresh").status_code == 200
        limited = client.post("/api/v1/auth/refresh")
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"


class TestRequestId:
    def test_request_id_is_echoed(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers={"X-Request-ID": "trace-abc-123"})
        assert resp.headers["x-request-id"] == "trace-abc-123"
        assert resp.json()["request_id"] == "trace-abc-123"

    def test_request_id_generated_when_absent(self, client: TestClient) -> None:
        resp = client.get("/api/v1/health")
        assert len(resp.headers["x-request-id"]) == 32
