"""Integration tests for the HTTP authentication flow.

Covers:
- CSRF token handshake
- Registration and login
- Token refresh and rotation
- Logout, session listing and password change
- Admin endpoints
- Health check
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from eventauth import app as app_module
from eventauth.service import audit as audit_events
from eventauth.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _csrf(client) -> str:
    response = client.get("/auth/csrf-token")
    assert response.status_code == 200
    return response.json()["data"]["csrf_token"]


def _send(client, method, path, *, json=None, headers=None):
    merged = {"X-CSRF-Token": _csrf(client), **(headers or {})}
    return client.request(method, path, json=json, headers=merged)


def _register(client, email="testuser@example.com", username="testuser", password=PASSWORD):
    return _send(
        client,
        "POST",
        "/auth/register",
        json={
            "email": email,
            "username": username,
            "password": password,
            "firstName": "Test",
            "lastName": "User",
        },
    )


def _login(client, email="testuser@example.com", password=PASSWORD, **extra):
    return _send(client, "POST", "/auth/login", json={"email": email, "password": password, **extra})


def _auth(payload) -> dict:
    return {"Authorization": f"Bearer {payload['tokens']['access_token']}"}


class TestCsrfEnforcement:
    """State-changing requests need a fresh CSRF token."""

    def test_missing_token_rejected(self, client):
        response = client.post("/auth/login", json={"email": "a@example.com", "password": "x"})
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["message"] == "CSRF token missing"

    def test_unknown_token_rejected(self, client):
        response = client.post(
            "/auth/login",
            json={"email": "a@example.com", "password": "x"},
            headers={"X-CSRF-Token": "forged"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "invalid CSRF token"

    def test_token_is_single_use(self, client):
        token = _csrf(client)
        body = {"email": "a@example.com", "password": "x"}
        first = client.post("/auth/login", json=body, headers={"X-CSRF-Token": token})
        assert first.status_code == 401
        second = client.post("/auth/login", json=body, headers={"X-CSRF-Token": token})
        assert second.status_code == 403

    def test_token_accepted_from_json_body(self, client):
        _register(client)
        response = client.post(
            "/auth/login",
            json={"email": "testuser@example.com", "password": PASSWORD, "csrfToken": _csrf(client)},
        )
        assert response.status_code == 200

    def test_token_bound_to_client_address(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "trusted_proxy_hops", 1)
        token = _csrf(client)
        response = client.post(
            "/auth/login",
            json={"email": "a@example.com", "password": "x"},
            headers={"X-CSRF-Token": token, "X-Forwarded-For": "203.0.113.7"},
        )
        assert response.status_code == 403
        entries = get_runtime().audit.list_entries(activity_type=audit_events.CSRF_IP_MISMATCH)
        assert len(entries) == 1

    def test_forwarded_header_ignored_without_trusted_proxy(self, client):
        token = _csrf(client)
        response = client.post(
            "/auth/login",
            json={"email": "a@example.com", "password": "x"},
            headers={"X-CSRF-Token": token, "X-Forwarded-For": "203.0.113.7"},
        )
        assert response.status_code == 401
        assert get_runtime().audit.list_entries(activity_type=audit_events.CSRF_IP_MISMATCH) == []

    def test_safe_methods_need_no_token(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/auth/profile").status_code == 401


class TestRegisterAndLogin:
    """Account creation and password login."""

    def test_register_returns_user_tokens_and_session(self, client):
        response = _register(client)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "testuser@example.com"
        assert data["user"]["role"] == "ONSITE"
        assert data["user"]["display_name"] == "Test User"
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["session_id"]
        assert "password" not in response.text.lower()
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Request-ID"]

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client, username="someoneelse")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "user_already_exists"

    def test_weak_password_rejected(self, client):
        response = _register(client, password="short")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_invalid_email_rejected(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400

    def test_login_success(self, client):
        _register(client)
        response = _login(client, rememberMe=True)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["last_login_at"] is not None
        assert data["tokens"]["expires_in"] == get_runtime().tokens.access_ttl

    def test_wrong_password_and_unknown_email_identical(self, client):
        _register(client)
        wrong = _login(client, password="WrongPassword1!")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_after_repeated_failures(self, client):
        _register(client)
        for _ in range(get_runtime().settings.max_failed_logins):
            assert _login(client, password="WrongPassword1!").status_code == 401
        response = _login(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_registration_rate_limited_per_address(self, client):
        limit = get_runtime().settings.register_rate_limit_per_minute
        for index in range(limit):
            assert _register(client, f"user{index}@example.com", f"user{index}").status_code == 201
        response = _register(client, "late@example.com", "late")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1


class TestSessionLifecycle:
    """Authenticated requests, refresh, logout and password change."""

    def test_profile_requires_valid_token(self, client):
        data = _register(client).json()["data"]
        response = client.get("/auth/profile", headers=_auth(data))
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "testuser"
        bad = client.get("/auth/profile", headers={"Authorization": "Bearer junk"})
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "token_invalid"

    def test_refresh_rotates_and_revokes_previous_tokens(self, client):
        data = _register(client).json()["data"]
        response = _send(
            client, "POST", "/auth/refresh", json={"refreshToken": data["tokens"]["refresh_token"]}
        )
        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["session_id"] == data["session_id"]

        replay = _send(
            client, "POST", "/auth/refresh", json={"refreshToken": data["tokens"]["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_refresh_token"
        assert client.get("/auth/profile", headers=_auth(data)).status_code == 401
        assert client.get("/auth/profile", headers=_auth(refreshed)).status_code == 200

    def test_logout_revokes_access_token(self, client):
        data = _register(client).json()["data"]
        response = _send(client, "POST", "/auth/logout", headers=_auth(data))
        assert response.status_code == 200
        assert response.json()["data"] == {"session_id": data["session_id"], "revoked": True}
        assert client.get("/auth/profile", headers=_auth(data)).status_code == 401

    def test_sessions_listing_and_revocation(self, client):
        first = _register(client).json()["data"]
        second = _login(client).json()["data"]
        listing = client.get("/auth/sessions", headers=_auth(second)).json()["data"]
        assert {s["id"] for s in listing} == {first["session_id"], second["session_id"]}
        assert [s["current"] for s in listing if s["id"] == second["session_id"]] == [True]

        response = _send(
            client, "DELETE", f"/auth/sessions/{first['session_id']}", headers=_auth(second)
        )
        assert response.status_code == 200
        assert client.get("/auth/profile", headers=_auth(first)).status_code == 401
        missing = _send(client, "DELETE", "/auth/sessions/does-not-exist", headers=_auth(second))
        assert missing.status_code == 404

    def test_logout_all(self, client):
        first = _register(client).json()["data"]
        second = _login(client).json()["data"]
        response = _send(client, "POST", "/auth/logout-all", headers=_auth(second))
        assert response.json()["data"] == {"sessions_revoked": 2}
        assert client.get("/auth/profile", headers=_auth(first)).status_code == 401

    def test_change_password(self, client):
        data = _register(client).json()["data"]
        new_password = "EvenBetterPass456!"
        response = _send(
            client,
            "PUT",
            "/auth/change-password",
            json={
                "currentPassword": PASSWORD,
                "newPassword": new_password,
                "confirmPassword": new_password,
            },
            headers=_auth(data),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"sessions_revoked": 1}
        assert client.get("/auth/profile", headers=_auth(data)).status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password=new_password).status_code == 200

    def test_change_password_wrong_current(self, client):
        data = _register(client).json()["data"]
        response = _send(
            client,
            "PUT",
            "/auth/change-password",
            json={"currentPassword": "Nope-nope-1", "newPassword": "EvenBetterPass456!"},
            headers=_auth(data),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_permissions_endpoint(self, client):
        data = _register(client).json()["data"]
        response = client.get("/auth/permissions", headers=_auth(data))
        body = response.json()["data"]
        assert body["role"] == "ONSITE"
        assert "operations:write" in body["permissions"]
        assert "bom:write" not in body["permissions"]


def _admin_headers() -> dict:
    result = asyncio.run(
        get_runtime().auth.register(
            "admin@example.com", "admin", PASSWORD, first_name="Ada", last_name="Min", role="ADMIN"
        )
    )
    return {"Authorization": f"Bearer {result.tokens.access_token}"}


class TestAdminEndpoints:
    """Security log and direct permission grants."""

    def test_non_admin_forbidden(self, client):
        data = _register(client).json()["data"]
        response = client.get("/admin/security-log", headers=_auth(data))
        assert response.status_code == 403

    def test_security_log_lists_failed_logins(self, client):
        _register(client)
        _login(client, password="WrongPassword1!")
        admin = _admin_headers()
        response = client.get(
            "/admin/security-log",
            params={"activity_type": audit_events.LOGIN_FAILED},
            headers=admin,
        )
        assert response.status_code == 200
        entries = response.json()["data"]
        assert len(entries) == 1
        assert entries[0]["details"]["reason"] == "wrong_password"

    def test_security_log_limit_validated(self, client):
        response = client.get("/admin/security-log", params={"limit": 0}, headers=_admin_headers())
        assert response.status_code == 400

    def test_grant_permission(self, client):
        data = _register(client).json()["data"]
        admin = _admin_headers()
        response = _send(
            client,
            "POST",
            f"/admin/users/{data['user']['id']}/permissions",
            json={"resourceType": "bom", "actions": ["write"]},
            headers=admin,
        )
        assert response.status_code == 201
        assert response.json()["data"]["actions"] == ["write"]
        permissions = client.get("/auth/permissions", headers=_auth(data)).json()["data"]
        assert "bom:write" in permissions["permissions"]

    def test_grant_for_missing_user(self, client):
        response = _send(
            client,
            "POST",
            "/admin/users/missing/permissions",
            json={"resourceType": "bom", "actions": ["write"]},
            headers=_admin_headers(),
        )
        assert response.status_code == 404


class TestHealth:
    def test_health_reports_components(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["type"] == "memory"
        assert data["checks"]["redis"]["status"] == "not_configured"
        assert response.headers["X-Frame-Options"] == "DENY"
