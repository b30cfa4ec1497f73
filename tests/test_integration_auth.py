"""Integration tests for authentication flow.

Tests the complete auth flow including:
- Registration and login
- Cookie and bearer authentication
- Token refresh and transparent rotation of expired access tokens
- Logout
- Password change and reset
- Profile updates
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from everest import app as app_module
from everest.service.runtime import get_runtime

PASSWORD = "TestPassword123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, username="tester", email="tester@example.com", password=PASSWORD):
    response = client.post(
        "/api/users/register",
        json={
            "username": username,
            "email": email,
            "password": password,
            "confirm_password": password,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    """Tests for user registration."""

    def test_register_returns_user_and_sets_cookies(self, client):
        response = client.post(
            "/api/users/register",
            json={
                "username": "newbie",
                "email": "Newbie@Example.com",
                "password": PASSWORD,
                "confirm_password": PASSWORD,
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["user"]["email"] == "newbie@example.com"
        assert body["data"]["user"]["role"] == "user"
        assert body["data"]["access_token"]
        assert client.cookies.get("token") == body["data"]["access_token"]
        assert client.cookies.get("refreshToken")

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = client.post(
            "/api/users/register",
            json={
                "username": "someone_else",
                "email": "tester@example.com",
                "password": PASSWORD,
                "confirm_password": PASSWORD,
            },
        )

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_invalid_username_rejected(self, client):
        response = client.post(
            "/api/users/register",
            json={
                "username": "no spaces!",
                "email": "tester@example.com",
                "password": PASSWORD,
                "confirm_password": PASSWORD,
            },
        )

        assert response.status_code == 400

    def test_invalid_email_rejected(self, client):
        response = client.post(
            "/api/users/register",
            json={
                "username": "tester",
                "email": "not-an-email",
                "password": PASSWORD,
                "confirm_password": PASSWORD,
            },
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Please provide a valid email"


class TestLogin:
    def test_login_success(self, client):
        _register(client)
        fresh = TestClient(app_module.app)

        response = fresh.post(
            "/api/users/login", json={"email": "TESTER@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "tester"
        assert fresh.cookies.get("token")

    def test_login_wrong_password(self, client):
        _register(client)

        response = client.post(
            "/api/users/login", json={"email": "tester@example.com", "password": "Wrong12345"}
        )

        assert response.status_code == 401
        assert response.json() == {
            "status": "fail",
            "code": "INVALID_CREDENTIALS",
            "message": "Invalid credentials",
        }

    def test_login_unknown_email(self, client):
        response = client.post(
            "/api/users/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"


class TestAuthentication:
    def test_me_with_cookie(self, client):
        _register(client)

        response = client.get("/api/users/me")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "tester"

    def test_me_with_bearer(self, client):
        data = _register(client)
        fresh = TestClient(app_module.app)

        response = fresh.get("/api/users/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 200

    def test_me_without_credentials(self, client):
        response = client.get("/api/users/me")

        assert response.status_code == 401
        assert response.json()["code"] == "NO_TOKEN"

    def test_token_from_other_client_rejected(self, client):
        data = _register(client)
        fresh = TestClient(app_module.app)

        response = fresh.get(
            "/api/users/me",
            headers={**_bearer(data["access_token"]), "User-Agent": "stolen-agent/1.0"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_HIJACK"

    def test_garbage_token_rejected(self, client):
        response = client.get("/api/users/me", headers=_bearer("x" * 40))

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_expired_access_token_rotated_from_cookie(self, client):
        _register(client)
        runtime = get_runtime()
        later = datetime.now(timezone.utc) + timedelta(minutes=61)
        runtime.codec.clock = lambda: later

        response = client.get("/api/users/me")

        assert response.status_code == 200
        set_cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("token=") for c in set_cookies)
        assert any(c.startswith("refreshToken=") for c in set_cookies)

    def test_expired_access_token_without_refresh(self, client):
        data = _register(client)
        runtime = get_runtime()
        later = datetime.now(timezone.utc) + timedelta(minutes=61)
        runtime.codec.clock = lambda: later
        fresh = TestClient(app_module.app)

        response = fresh.get("/api/users/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"


class TestRefresh:
    def test_refresh_from_cookie(self, client):
        data = _register(client)

        response = client.post("/api/users/auth/refresh")

        assert response.status_code == 200
        new_token = response.json()["data"]["access_token"]
        assert new_token != data["access_token"]
        assert client.cookies.get("token") == new_token

    def test_refresh_invalidates_previous_access_token(self, client):
        data = _register(client)
        client.post("/api/users/auth/refresh")
        fresh = TestClient(app_module.app)

        response = fresh.get("/api/users/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_REVOKED"

    def test_refresh_from_body(self, client):
        _register(client)
        refresh_token = client.cookies.get("refreshToken")
        fresh = TestClient(app_module.app)

        response = fresh.post("/api/users/auth/refresh", json={"refreshToken": refresh_token})

        assert response.status_code == 200

    def test_refresh_without_token(self, client):
        response = client.post("/api/users/auth/refresh")

        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_REFRESH_TOKEN"

    def test_refresh_token_single_use(self, client):
        _register(client)
        refresh_token = client.cookies.get("refreshToken")
        client.post("/api/users/auth/refresh")
        fresh = TestClient(app_module.app)

        response = fresh.post("/api/users/auth/refresh", json={"refresh_token": refresh_token})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_REFRESH_TOKEN"
        set_cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("refreshToken=") for c in set_cookies)


class TestLogout:
    def test_logout_revokes_session(self, client):
        data = _register(client)

        response = client.post("/api/users/logout")
        assert response.status_code == 200

        fresh = TestClient(app_module.app)
        response = fresh.get("/api/users/me", headers=_bearer(data["access_token"]))
        assert response.status_code == 401

    def test_logout_requires_authentication(self, client):
        assert client.post("/api/users/logout").status_code == 401


class TestPasswordChange:
    def test_change_password(self, client):
        _register(client)

        response = client.post(
            "/api/users/change-password",
            json={
                "current_password": PASSWORD,
                "new_password": "BrandNewPass456",
                "confirm_password": "BrandNewPass456",
            },
        )

        assert response.status_code == 200
        assert client.get("/api/users/me").status_code == 200
        login = TestClient(app_module.app).post(
            "/api/users/login",
            json={"email": "tester@example.com", "password": "BrandNewPass456"},
        )
        assert login.status_code == 200

    def test_change_password_wrong_current(self, client):
        _register(client)

        response = client.post(
            "/api/users/change-password",
            json={
                "current_password": "NotMyPassword1",
                "new_password": "BrandNewPass456",
                "confirm_password": "BrandNewPass456",
            },
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Your current password is incorrect"


class TestPasswordReset:
    def test_forgot_password_unknown_email(self, client):
        response = client.post("/api/users/forgot-password", json={"email": "ghost@example.com"})

        assert response.status_code == 200
        assert response.json()["status"] == "success"

    def test_reset_flow(self, client):
        _register(client)
        runtime = get_runtime()

        with patch.object(runtime.email, "send_password_reset", return_value=True) as send:
            response = client.post(
                "/api/users/forgot-password", json={"email": "tester@example.com"}
            )
        assert response.status_code == 200
        token = send.call_args.args[1]

        fresh = TestClient(app_module.app)
        response = fresh.post(
            f"/api/users/reset-password/{token}",
            json={"password": "ResetPass789", "confirm_password": "ResetPass789"},
        )
        assert response.status_code == 200
        assert fresh.cookies.get("token")

        login = TestClient(app_module.app).post(
            "/api/users/login", json={"email": "tester@example.com", "password": "ResetPass789"}
        )
        assert login.status_code == 200

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/api/users/reset-password/deadbeef",
            json={"password": "ResetPass789", "confirm_password": "ResetPass789"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Token is invalid or has expired"


class TestProfile:
    def test_update_username(self, client):
        _register(client)

        response = client.patch("/api/users/profile", json={"username": "renamed"})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "renamed"

    def test_role_cannot_be_self_assigned(self, client):
        _register(client)

        response = client.patch("/api/users/profile", json={"role": "admin"})

        assert response.status_code == 400

    def test_empty_update_rejected(self, client):
        _register(client)

        response = client.patch("/api/users/profile", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Nothing to update"

    def test_username_taken(self, client):
        _register(TestClient(app_module.app), username="taken", email="taken@example.com")
        _register(client)

        response = client.patch("/api/users/profile", json={"username": "taken"})

        assert response.status_code == 409


class TestHttpSurface:
    def test_security_and_request_id_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_health_reports_memory_store(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
