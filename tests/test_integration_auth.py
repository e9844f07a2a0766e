"""Integration tests for the authentication flow.

Tests the complete auth flow including:
- Registration
- Login and device sessions
- Token refresh and replay rejection
- Logout
- Password reset and password change
"""

import pytest
from fastapi.testclient import TestClient

from taskhub import app as app_module
from taskhub.service.runtime import get_runtime
from taskhub.storage.models import UserStatus


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


def _register(client, email, password):
    return client.post("/v1/auth/register", json={"email": email, "password": password})


def _login(client, email, password):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user(self, client, test_user_email, strong_password):
        response = _register(client, test_user_email, strong_password)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["email"] == test_user_email
        assert data["data"]["role"] == "USER"
        assert "password" not in data["data"]

    def test_duplicate_email_conflicts(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        response = _register(client, test_user_email.upper(), strong_password)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_lists_problems(self, client, test_user_email):
        response = _register(client, test_user_email, "password")
        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert len(body["error"]["details"]["errors"]) >= 2


class TestLogin:
    def test_fullwidth_email_logs_in(self, client, strong_password):
        fullwidth = "\uff54\uff45\uff53\uff54@example.com"
        registered = _register(client, fullwidth, strong_password)
        assert registered.json()["data"]["email"] == "test@example.com"
        assert _login(client, fullwidth, strong_password).status_code == 200
        assert _login(client, "test@example.com", strong_password).status_code == 200

    def test_login_returns_tokens(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        response = _login(client, test_user_email, strong_password)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["device_id"]

        me = client.get("/v1/me", headers=_auth(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == test_user_email

    def test_wrong_password_and_unknown_email_look_the_same(
        self, client, test_user_email, strong_password
    ):
        _register(client, test_user_email, strong_password)
        wrong = _login(client, test_user_email, "Wr0ng!Password")
        unknown = _login(client, "nobody@example.com", strong_password)
        malformed = _login(client, "not-an-email", strong_password)
        assert wrong.status_code == unknown.status_code == malformed.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"] == malformed.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_banned_user_gets_403(self, client, test_user_email, strong_password):
        user_id = _register(client, test_user_email, strong_password).json()["data"]["id"]
        get_runtime().store.set_user_status(user_id, UserStatus.BANNED)
        response = _login(client, test_user_email, strong_password)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_banned"

    def test_me_requires_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_is_not_an_access_token(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        tokens = _login(client, test_user_email, strong_password).json()["data"]
        response = client.get("/v1/me", headers=_auth(tokens["refresh_token"]))
        assert response.status_code == 401


class TestRefreshAndLogout:
    @pytest.fixture
    def tokens(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        return _login(client, test_user_email, strong_password).json()["data"]

    def test_refresh_rotates(self, client, tokens):
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 200
        new_tokens = response.json()["data"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_logout_is_idempotent(self, client, tokens):
        for _ in range(2):
            response = client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
            assert response.status_code == 200
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 401

    def test_logout_without_token(self, client):
        assert client.post("/v1/auth/logout", json={}).status_code == 200

    def test_devices_listed_and_revoked(self, client, tokens):
        headers = _auth(tokens["access_token"])
        devices = client.get("/v1/auth/devices", headers=headers).json()["data"]["items"]
        assert [d["id"] for d in devices] == [tokens["device_id"]]

        response = client.delete(f"/v1/auth/devices/{tokens['device_id']}", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["revoked_at"] is not None
        assert client.get("/v1/auth/devices", headers=headers).json()["data"]["items"] == []

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_unknown_device_is_404(self, client, tokens):
        response = client.delete("/v1/auth/devices/nope", headers=_auth(tokens["access_token"]))
        assert response.status_code == 404


class TestPasswordReset:
    def test_reset_flow(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        tokens = _login(client, test_user_email, strong_password).json()["data"]

        requested = client.post("/v1/auth/reset/request", json={"email": test_user_email})
        assert requested.status_code == 200
        code = requested.json()["data"]["code"]
        assert requested.json()["data"]["status"] == "sent"

        confirmed = client.post(
            "/v1/auth/reset/confirm",
            json={"email": test_user_email, "code": code, "new_password": "Brand!New1pass"},
        )
        assert confirmed.status_code == 200

        # Refresh tokens are revoked; the access token lives until it expires
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        assert client.get("/v1/me", headers=_auth(tokens["access_token"])).status_code == 200

        assert _login(client, test_user_email, strong_password).status_code == 401
        assert _login(client, test_user_email, "Brand!New1pass").status_code == 200

    def test_unknown_email_gets_same_shape(self, client):
        response = client.post("/v1/auth/reset/request", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "sent"

    def test_bad_code_rejected(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        client.post("/v1/auth/reset/request", json={"email": test_user_email})
        response = client.post(
            "/v1/auth/reset/confirm",
            json={"email": test_user_email, "code": "deadbeef", "new_password": "Brand!New1pass"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired_code"


class TestChangePassword:
    def test_change_password(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        tokens = _login(client, test_user_email, strong_password).json()["data"]
        response = client.post(
            "/v1/auth/password",
            json={"current_password": strong_password, "new_password": "An0ther!Secret"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert _login(client, test_user_email, "An0ther!Secret").status_code == 200

    def test_wrong_current_password(self, client, test_user_email, strong_password):
        _register(client, test_user_email, strong_password)
        tokens = _login(client, test_user_email, strong_password).json()["data"]
        response = client.post(
            "/v1/auth/password",
            json={"current_password": "Wr0ng!Password", "new_password": "An0ther!Secret"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_current_password"
