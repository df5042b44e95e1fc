"""Integration tests for the HTTP authentication flow.

Covers:
- Signup and login, with cookies and bearer credentials
- Token refresh and reuse detection
- CSRF double-submit enforcement
- Rate limiting and lockout responses
- Password reset
- Moderation through the admin endpoint
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.csrf import CSRF_COOKIE, CSRF_HEADER
from sessionguard.service.runtime import get_runtime


class CapturingNotifier:
    def __init__(self):
        self.sent = []

    async def send_reset(self, user, envelope, expires_at):
        self.sent.append(envelope)


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _signup(client, email, password, **extra):
    return client.post("/v1/auth/signup", json={"email": email, "password": password, **extra})


def _csrf_headers(client):
    return {CSRF_HEADER: client.cookies.get(CSRF_COOKIE)}


class TestSignupFlow:
    def test_signup_creates_user(self, client, test_user_email, test_user_password):
        response = _signup(client, test_user_email, test_user_password, handle="tester")

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user_id"]
        assert data["token_type"] == "bearer"
        assert data["requires_captcha"] is False
        for name in ("access_token", "refresh_token", CSRF_COOKIE):
            assert client.cookies.get(name)

    def test_session_cookies_are_hardened(self, client, test_user_email, test_user_password):
        response = _signup(client, test_user_email, test_user_password)
        cookies = response.headers.get_list("set-cookie")

        access = next(c for c in cookies if c.startswith("access_token="))
        csrf = next(c for c in cookies if c.startswith(f"{CSRF_COOKIE}="))
        assert "HttpOnly" in access
        assert "samesite=strict" in access.lower()
        assert "HttpOnly" not in csrf

    def test_signup_rejects_duplicate_email(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = _signup(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_input(self, client, test_user_email):
        bad_email = _signup(client, "invalid-email", "TestPassword123!")
        short_password = _signup(client, test_user_email, "short")

        assert bad_email.status_code == 400
        assert short_password.status_code == 400
        assert short_password.json()["error"]["code"] == "validation_error"

    def test_signup_rate_limited_per_address(self, client, test_user_password):
        for i in range(3):
            assert _signup(client, f"u{i}@example.com", test_user_password).status_code == 201
        response = _signup(client, "u9@example.com", test_user_password)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestLoginFlow:
    def test_login_by_handle_returns_rate_limit_headers(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password, handle="tester")
        client.cookies.clear()

        response = client.post(
            "/v1/auth/login",
            json={"identifier": "tester", "password": test_user_password, "device_id": "phone"},
        )
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_invalid_credentials(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        wrong = client.post(
            "/v1/auth/login", json={"identifier": test_user_email, "password": "WrongPass1!"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"identifier": "nobody@example.com", "password": "WrongPass1!"}
        )

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]
        assert wrong.headers["WWW-Authenticate"] == "Bearer"

    def test_sixth_attempt_rate_limited_and_eleventh_locked(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password)
        statuses = []
        for _ in range(10):
            response = client.post(
                "/v1/auth/login", json={"identifier": test_user_email, "password": "WrongPass1!"}
            )
            statuses.append(response.status_code)
        assert statuses == [401] * 5 + [429] * 5
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["details"]["requires_captcha"] is True

        locked = client.post(
            "/v1/auth/login", json={"identifier": test_user_email, "password": test_user_password}
        )
        assert locked.status_code == 429
        body = locked.json()["error"]
        assert body["code"] == "account_locked"
        assert datetime.fromisoformat(body["details"]["locked_until"]) > datetime.now(timezone.utc)
        assert int(locked.headers["Retry-After"]) > 0


class TestTokenFlow:
    def test_bearer_access(self, client, test_user_email, test_user_password):
        token = _signup(client, test_user_email, test_user_password).json()["data"]["access_token"]
        client.cookies.clear()

        response = client.get("/v1/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["email"] == test_user_email

        assert client.get("/v1/me").status_code == 401

    def test_refresh_with_body_and_reuse_detection(
        self, client, test_user_email, test_user_password
    ):
        first = _signup(client, test_user_email, test_user_password).json()["data"]
        client.cookies.clear()

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert rotated.status_code == 200
        new_refresh = rotated.json()["data"]["refresh_token"]
        assert new_refresh != first["refresh_token"]

        client.cookies.clear()
        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401

        # The whole device family is gone after the replay
        client.cookies.clear()
        after = client.post("/v1/auth/refresh", json={"refresh_token": new_refresh})
        assert after.status_code == 401

        store = get_runtime().store
        assert store.list_audit_entries(event="TOKEN_REUSE_DETECTED")

    def test_refresh_requires_a_token(self, client):
        response = client.post("/v1/auth/refresh")
        assert response.status_code == 401

    def test_sessions_listing_and_device_revoke(self, client, test_user_email, test_user_password):
        token = _signup(client, test_user_email, test_user_password).json()["data"]["access_token"]
        client.cookies.clear()
        client.post(
            "/v1/auth/login",
            json={"identifier": test_user_email, "password": test_user_password, "device_id": "tablet"},
        )
        client.cookies.clear()
        headers = {"Authorization": f"Bearer {token}"}

        sessions = client.get("/v1/auth/sessions", headers=headers).json()["data"]["items"]
        assert sorted(s["device_id"] for s in sessions) == ["tablet", "web"]

        assert client.delete("/v1/auth/sessions/tablet", headers=headers).status_code == 200
        assert client.delete("/v1/auth/sessions/tablet", headers=headers).status_code == 404


class TestCsrf:
    def test_cookie_post_without_csrf_header_rejected(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout_all")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "csrf_invalid"

    def test_cookie_post_with_csrf_header(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout_all", headers=_csrf_headers(client))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1

    def test_mismatched_header_rejected(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout_all", headers={CSRF_HEADER: "forged"})
        assert response.status_code == 403

    def test_authorization_header_does_not_skip_cookie_check(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout_all", headers={"Authorization": "Bearer junk"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "csrf_invalid"
        assert client.get("/v1/auth/sessions").json()["data"]["items"]

    def test_safe_methods_not_checked(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        assert client.get("/v1/me").status_code == 200

    def test_csrf_endpoint_rotates_cookie(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        before = client.cookies.get(CSRF_COOKIE)
        response = client.get("/v1/auth/csrf")

        assert response.status_code == 200
        token = response.json()["data"]["csrf_token"]
        assert token != before
        assert client.cookies.get(CSRF_COOKIE) == token

    def test_cookie_refresh_needs_csrf_header(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        assert client.post("/v1/auth/refresh").status_code == 403
        assert client.post("/v1/auth/refresh", headers=_csrf_headers(client)).status_code == 200

    def test_logout_clears_cookies(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout", headers=_csrf_headers(client))

        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None


class TestPasswordReset:
    def test_reset_flow(self, client, test_user_email, test_user_password):
        notifier = CapturingNotifier()
        get_runtime().resets.notifier = notifier
        old_refresh = _signup(client, test_user_email, test_user_password).json()["data"][
            "refresh_token"
        ]
        client.cookies.clear()

        known = client.post("/v1/auth/reset/request", json={"email": test_user_email})
        unknown = client.post("/v1/auth/reset/request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        [envelope] = notifier.sent

        confirm = client.post(
            "/v1/auth/reset/confirm", json={"token": envelope, "new_password": "BrandNewPass9!"}
        )
        assert confirm.status_code == 200

        again = client.post(
            "/v1/auth/reset/confirm", json={"token": envelope, "new_password": "OtherPass99!"}
        )
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "invalid or expired reset token"

        client.cookies.clear()
        assert (
            client.post("/v1/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
        )
        login = client.post(
            "/v1/auth/login", json={"identifier": test_user_email, "password": "BrandNewPass9!"}
        )
        assert login.status_code == 200

    def test_malformed_tokens_are_rejected_cleanly(self, client):
        confirm = client.post(
            "/v1/auth/reset/confirm",
            json={"token": "eyJhbGciOiJIUzI1NiJ9.e30.é", "new_password": "BrandNewPass9!"},
        )
        assert confirm.status_code == 400
        assert confirm.json()["error"]["message"] == "invalid or expired reset token"

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": "ééé"})
        assert refresh.status_code == 401


class TestModeration:
    def _admin_headers(self, client):
        data = _signup(client, "admin@example.com", "AdminPassword1!").json()["data"]
        get_runtime().store.update_user_role(data["user_id"], "admin")
        client.cookies.clear()
        return {"Authorization": f"Bearer {data['access_token']}"}

    def test_ban_blocks_outstanding_credentials(self, client, test_user_email, test_user_password):
        admin = self._admin_headers(client)
        member = _signup(client, test_user_email, test_user_password).json()["data"]
        client.cookies.clear()

        response = client.patch(
            f"/v1/admin/users/{member['user_id']}/status",
            json={"status": "banned", "note": "abuse"},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "banned"

        me = client.get("/v1/me", headers={"Authorization": f"Bearer {member['access_token']}"})
        assert me.status_code == 403
        assert me.json()["error"]["code"] == "account_banned"

    def test_suspension_with_end(self, client, test_user_email, test_user_password):
        admin = self._admin_headers(client)
        member = _signup(client, test_user_email, test_user_password).json()["data"]
        client.cookies.clear()
        until = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()

        response = client.patch(
            f"/v1/admin/users/{member['user_id']}/status",
            json={"status": "suspended", "suspended_until": until},
            headers=admin,
        )
        assert response.status_code == 200

        login = client.post(
            "/v1/auth/login", json={"identifier": test_user_email, "password": test_user_password}
        )
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "account_suspended"
        assert login.json()["error"]["details"]["suspended_until"]

    def test_non_admin_forbidden(self, client, test_user_email, test_user_password):
        member = _signup(client, test_user_email, test_user_password).json()["data"]
        client.cookies.clear()
        response = client.patch(
            f"/v1/admin/users/{member['user_id']}/status",
            json={"status": "banned"},
            headers={"Authorization": f"Bearer {member['access_token']}"},
        )
        assert response.status_code == 403

    def test_end_date_only_for_suspensions(self, client):
        admin = self._admin_headers(client)
        response = client.patch(
            "/v1/admin/users/someone/status",
            json={"status": "banned", "suspended_until": "2030-01-01T00:00:00Z"},
            headers=admin,
        )
        assert response.status_code == 400


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Request-ID"]
