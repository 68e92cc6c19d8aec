"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* endpoints.

Covers:
  - register: 201 with tokens + refresh cookie, mismatch (400), duplicate (409),
    malformed email (422), disabled (403)
  - login: success, uniform 401 for unknown user / wrong password / inactive
  - refresh-token: body and cookie sources, rotation, reuse rejected,
    bearer token blacklisted, missing token (400)
  - revoke-token, logout, logout-all, revoke-all-tokens
  - validate-token, me, sessions (X-Session-Id only touches the caller's own), permission catalog
  - external-login behind the feature flag
  - rate limiting (429 + Retry-After) and store failure (503)

The api_client fixture is module-scoped, so every test registers its own
uniquely named user and clears the cookie jar first.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy.exc import OperationalError

from auth import permissions
from conftest import auth_header

PASSWORD = "pa55word!"


@pytest.fixture(autouse=True)
def _fresh_cookies(api_client):
    client, _, _ = api_client
    client.cookies.clear()
    yield
    client.cookies.clear()


def _username(prefix: str = "user") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _register(client, username: str | None = None, **overrides):
    username = username or _username()
    body = {
        "username": username,
        "email": f"{username}@example.com",
        "password": PASSWORD,
        "confirm_password": PASSWORD,
    }
    body.update(overrides)
    return client.post("/api/v1/auth/register", json=body)


def _login(client, username: str, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password})


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_success(self, api_client):
        client, _, _ = api_client
        resp = _register(client, "alice_reg")
        assert resp.status_code == 201
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["auth_type"] == "password"
        assert data["user"]["username"] == "alice_reg"
        assert data["user"]["permissions"] == permissions.DEFAULT_PERMISSIONS
        assert data["granted_permissions"] == ["view_products", "view_product_details"]
        assert resp.headers["cache-control"] == "no-store"
        cookie = resp.headers["set-cookie"].lower()
        assert "refresh_token=" in cookie
        assert "httponly" in cookie

    def test_password_mismatch(self, api_client):
        client, _, _ = api_client
        resp = _register(client, confirm_password="something-else")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_mismatch"

    def test_duplicate_username(self, api_client):
        client, _, _ = api_client
        name = _username()
        assert _register(client, name).status_code == 201
        resp = _register(client, name, email=f"other_{name}@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_identity"

    def test_malformed_email(self, api_client):
        client, _, _ = api_client
        resp = _register(client, email="not-an-email")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_short_password(self, api_client):
        client, _, _ = api_client
        resp = _register(client, password="abc", confirm_password="abc")
        assert resp.status_code == 422

    def test_disabled(self, api_client, monkeypatch):
        client, _, _ = api_client
        monkeypatch.setattr(client.app.state.settings, "self_registration_enabled", False)
        resp = _register(client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "registration_disabled"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success(self, api_client):
        client, _, _ = api_client
        name = _username()
        _register(client, name)
        resp = _login(client, name)
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["username"] == name
        assert data["session_id"]
        assert data["refresh_token"] != data["access_token"]

    def test_failures_are_indistinguishable(self, api_client, monkeypatch):
        client, admin_token, _ = api_client
        name = _username()
        inactive = _username()
        _register(client, name)
        user_id = _register(client, inactive).json()["user"]["id"]
        client.put(f"/api/v1/users/{user_id}/toggle-status", headers=auth_header(admin_token))

        wrong_password = _login(client, name, "wrong-password")
        unknown_user = _login(client, _username("ghost"), "wrong-password")
        disabled = _login(client, inactive)

        for resp in (wrong_password, unknown_user, disabled):
            assert resp.status_code == 401
        assert wrong_password.json() == unknown_user.json() == disabled.json()
        assert wrong_password.json()["error"]["code"] == "invalid_credentials"

    def test_rate_limited(self, api_client):
        client, _, _ = api_client
        statuses = [_login(client, "nobody", "wrong").status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429
        resp = _login(client, "nobody", "wrong")
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers

    def test_store_failure_is_503(self, api_client, monkeypatch):
        client, _, _ = api_client

        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("unable to open database file"))

        monkeypatch.setattr(client.app.state.user_store, "get_by_username", broken)
        resp = _login(client, "anyone")
        assert resp.status_code == 503
        body = resp.json()
        assert body["error"]["code"] == "service_unavailable"
        assert "unable to open" not in resp.text


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation_via_body(self, api_client):
        client, _, _ = api_client
        first = _register(client).json()
        client.cookies.clear()

        resp = client.post("/api/v1/auth/refresh-token", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert second["user"]["id"] == first["user"]["id"]

        reuse = client.post("/api/v1/auth/refresh-token", json={"refresh_token": first["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "invalid_refresh_token"

    def test_rotation_via_cookie(self, api_client):
        client, _, _ = api_client
        first = _register(client).json()
        resp = client.post("/api/v1/auth/refresh-token")
        assert resp.status_code == 200
        assert resp.json()["refresh_token"] != first["refresh_token"]

    def test_bearer_token_is_blacklisted(self, api_client):
        client, _, _ = api_client
        first = _register(client).json()
        resp = client.post(
            "/api/v1/auth/refresh-token",
            json={"refresh_token": first["refresh_token"]},
            headers=auth_header(first["access_token"]),
        )
        assert resp.status_code == 200
        check = client.get("/api/v1/auth/validate-token", headers=auth_header(first["access_token"]))
        assert check.status_code == 401
        assert check.json()["error"]["detail"] == "revoked"

    def test_unknown_token_is_uniform(self, api_client):
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/refresh-token", json={"refresh_token": "made-up"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"

    def test_missing_token(self, api_client):
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/refresh-token", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_token"

    def test_rate_limited(self, api_client):
        client, _, _ = api_client
        statuses = [
            client.post("/api/v1/auth/refresh-token", json={"refresh_token": "made-up"}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429


# ---------------------------------------------------------------------------
# Revocation and logout
# ---------------------------------------------------------------------------


class TestRevocation:
    def test_revoke_token(self, api_client):
        client, _, _ = api_client
        tokens = _register(client).json()
        resp = client.post(
            "/api/v1/auth/revoke-token",
            json={"token": tokens["refresh_token"], "reason": "lost phone"},
            headers=auth_header(tokens["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Token revoked successfully."
        refresh = client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_revoke_unknown_token(self, api_client):
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/revoke-token", json={"token": "made-up"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "token_not_found"

    def test_logout_requires_bearer(self, api_client):
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_token"

    def test_logout(self, api_client):
        client, _, _ = api_client
        tokens = _register(client).json()
        resp = client.post("/api/v1/auth/logout", headers=auth_header(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out successfully."
        assert "max-age=0" in resp.headers["set-cookie"].lower()

        check = client.get("/api/v1/auth/validate-token", headers=auth_header(tokens["access_token"]))
        assert check.status_code == 401
        refresh = client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_all_invalidates_other_devices(self, api_client):
        client, _, _ = api_client
        name = _username()
        laptop = _register(client, name).json()
        phone = _login(client, name).json()

        resp = client.post("/api/v1/auth/logout-all", headers=auth_header(laptop["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out from all devices successfully."

        stale = client.get("/api/v1/auth/validate-token", headers=auth_header(phone["access_token"]))
        assert stale.status_code == 401
        assert stale.json()["error"]["detail"] == "token_version_mismatch"
        presented = client.get("/api/v1/auth/validate-token", headers=auth_header(laptop["access_token"]))
        assert presented.json()["error"]["detail"] == "revoked"

    def test_revoke_all_tokens(self, api_client):
        client, _, _ = api_client
        tokens = _register(client).json()
        resp = client.post("/api/v1/auth/revoke-all-tokens", headers=auth_header(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "All tokens revoked successfully."
        refresh = client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_revoke_all_requires_auth(self, api_client):
        client, _, _ = api_client
        assert client.post("/api/v1/auth/revoke-all-tokens").status_code == 401


# ---------------------------------------------------------------------------
# Token introspection
# ---------------------------------------------------------------------------


class TestIntrospection:
    def test_validate_token(self, api_client):
        client, _, _ = api_client
        tokens = _register(client).json()
        resp = client.get("/api/v1/auth/validate-token", headers=auth_header(tokens["access_token"]))
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_valid"] is True
        assert data["user_id"] == tokens["user"]["id"]
        assert data["permissions"] == permissions.BASIC_USER
        assert data["token_version"] == 0

    def test_missing_bearer(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/validate-token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_garbage_bearer(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/validate-token", headers=auth_header("garbage"))
        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "invalid_token"
        assert error["detail"] == "invalid_token"

    def test_me(self, api_client):
        client, _, _ = api_client
        tokens = _register(client).json()
        resp = client.get("/api/v1/auth/me", headers=auth_header(tokens["access_token"]))
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == tokens["user"]["id"]
        assert data["active_session_count"] == 1
        assert "hashed_password" not in data

    def test_sessions_and_touch(self, api_client):
        client, _, _ = api_client
        name = _username()
        first = _register(client, name).json()
        _login(client, name)
        resp = client.get(
            "/api/v1/auth/sessions",
            headers={**auth_header(first["access_token"]), "X-Session-Id": first["session_id"]},
        )
        assert resp.status_code == 200
        sessions = resp.json()
        assert len(sessions) == 2
        assert first["session_id"] in {s["session_id"] for s in sessions}

    def test_session_header_cannot_touch_another_users_session(self, api_client):
        client, _, _ = api_client
        owner = _register(client).json()
        other = _register(client).json()
        tracker = client.app.state.session_tracker
        before = tracker.get_by_session_id(owner["session_id"]).last_access_at

        resp = client.get(
            "/api/v1/auth/me",
            headers={**auth_header(other["access_token"]), "X-Session-Id": owner["session_id"]},
        )
        assert resp.status_code == 200
        assert resp.json()["id"] == other["user"]["id"]
        assert tracker.get_by_session_id(owner["session_id"]).last_access_at == before

        client.get(
            "/api/v1/auth/me",
            headers={**auth_header(owner["access_token"]), "X-Session-Id": owner["session_id"]},
        )
        assert tracker.get_by_session_id(owner["session_id"]).last_access_at > before

    def test_permission_catalog_is_public(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/permissions")
        assert resp.status_code == 200
        data = resp.json()
        assert [p["name"] for p in data["primitives"]] == list(permissions.PRIMITIVES)
        roles = {r["name"]: r["value"] for r in data["roles"]}
        assert roles["basic_user"] == permissions.BASIC_USER
        assert roles["administrator"] == permissions.ADMINISTRATOR


# ---------------------------------------------------------------------------
# External login
# ---------------------------------------------------------------------------


class TestExternalLogin:
    def test_disabled_by_default(self, api_client):
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/external-login", headers={"X-Remote-User": "CORP\\erin"})
        assert resp.status_code == 404

    def test_enabled(self, api_client, monkeypatch):
        client, _, _ = api_client
        monkeypatch.setattr(client.app.state.settings, "external_auth_enabled", True)
        name = _username("ext")
        resp = client.post("/api/v1/auth/external-login", headers={"X-Remote-User": f"CORP\\{name}"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["auth_type"] == "external"
        assert data["user"]["username"] == name

        again = client.post("/api/v1/auth/external-login", headers={"X-Remote-User": f"CORP\\{name}"})
        assert again.json()["user"]["id"] == data["user"]["id"]

    def test_malformed_identity(self, api_client, monkeypatch):
        client, _, _ = api_client
        monkeypatch.setattr(client.app.state.settings, "external_auth_enabled", True)
        for headers in ({}, {"X-Remote-User": "CORP\\"}, {"X-Remote-User": "A\\B\\c"}):
            resp = client.post("/api/v1/auth/external-login", headers=headers)
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "invalid_identity"

    def test_external_account_cannot_password_login(self, api_client, monkeypatch):
        client, _, _ = api_client
        monkeypatch.setattr(client.app.state.settings, "external_auth_enabled", True)
        name = _username("ext")
        client.post("/api/v1/auth/external-login", headers={"X-Remote-User": f"CORP\\{name}"})
        resp = _login(client, name, "whatever")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "wrong_auth_type"
