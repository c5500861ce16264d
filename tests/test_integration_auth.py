"""Integration tests for the /api/auth surface.

Covers signup, login and lockout, refresh, cookie transport with CSRF,
email verification, password reset and session management.
"""

import pytest
from fastapi.testclient import TestClient

from vib3sales import app as app_module
from vib3sales.service.auth import FORGOT_PASSWORD_MESSAGE
from vib3sales.service.runtime import get_runtime

PASSWORD = "Abcdef1!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _signup(client, email="a@x.com", name="Ann", **extra):
    body = {"email": email, "password": PASSWORD, "name": name, **extra}
    return client.post("/api/auth/signup", json=body)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _verification_token(email="a@x.com"):
    store = get_runtime().store
    user = store.get_user_by_email(email)
    [record] = [t for t in store.email_verification_tokens.values() if t.user_id == user.id and not t.used]
    return record.token


class TestSignupFlow:
    """Tests for account creation."""

    def test_signup_returns_tokens_and_unverified_user(self, client):
        response = _signup(client, focus=["Local SEO"], role="Agency owner")
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["message"] == "Account created successfully. Please verify your email."
        assert data["requiresVerification"] is True
        assert data["accessToken"] and data["refreshToken"] and data["csrfToken"]
        assert data["user"]["email"] == "a@x.com"
        assert data["user"]["emailVerified"] is False
        assert data["user"]["focus"] == ["Local SEO"]
        assert "passwordHash" not in data["user"]

        store = get_runtime().store
        tokens = list(store.email_verification_tokens.values())
        assert len(tokens) == 1 and not tokens[0].used

    def test_signup_sets_httponly_session_cookies(self, client):
        response = _signup(client)
        cookies = response.headers.get_list("set-cookie")
        access = next(c for c in cookies if c.startswith("access_token="))
        assert "HttpOnly" in access
        assert "samesite=lax" in access.lower()
        assert "Max-Age" not in access
        assert any(c.startswith("refresh_token=") for c in cookies)

    def test_duplicate_email_any_case(self, client):
        _signup(client)
        response = _signup(client, email="A@X.COM")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "duplicate_email"
        assert error["message"] == "User with this email already exists"

    def test_invalid_email(self, client):
        response = _signup(client, email="invalid-email")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid email format"

    def test_weak_password_details(self, client):
        response = client.post(
            "/api/auth/signup", json={"email": "a@x.com", "password": "short", "name": "Ann"}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert "Password must contain at least one number" in error["details"]["errors"]

    def test_missing_fields(self, client):
        response = client.post("/api/auth/signup", json={"email": "a@x.com"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Email, password, and name are required"


class TestLoginFlow:
    def test_login_success(self, client):
        _signup(client)
        response = client.post("/api/auth/login", json={"email": "A@x.com", "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Login successful"
        assert data["requiresVerification"] is True
        assert data["user"]["lastLogin"]

    def test_remember_me_makes_cookies_persistent(self, client):
        _signup(client)
        response = client.post(
            "/api/auth/login", json={"email": "a@x.com", "password": PASSWORD, "rememberMe": True}
        )
        access = next(
            c for c in response.headers.get_list("set-cookie") if c.startswith("access_token=")
        )
        assert "Max-Age=604800" in access

    def test_wrong_password(self, client):
        _signup(client)
        response = client.post("/api/auth/login", json={"email": "a@x.com", "password": "Wrong1!x"})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["message"] == "Invalid email or password"

    def test_sixth_attempt_locked_out(self, client):
        _signup(client)
        for _ in range(5):
            bad = client.post("/api/auth/login", json={"email": "a@x.com", "password": "Wrong1!x"})
            assert bad.status_code == 401
        response = client.post("/api/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retryAfter"] > 0
        assert int(response.headers["Retry-After"]) == error["details"]["retryAfter"] * 60

    def test_missing_credentials(self, client):
        response = client.post("/api/auth/login", json={"email": "a@x.com"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Email and password are required"


class TestTokens:
    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Access token required"

    def test_me_with_bearer(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        response = client.get("/api/auth/me", headers=_bearer(data["accessToken"]))
        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "a@x.com"

    def test_me_with_cookie(self, client):
        _signup(client)
        response = client.get("/api/auth/me")
        assert response.status_code == 200

    def test_refresh_token_not_accepted_as_bearer(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        response = client.get("/api/auth/me", headers=_bearer(data["refreshToken"]))
        assert response.status_code == 401

    def test_refresh_from_body(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        response = client.post("/api/auth/refresh", json={"refreshToken": data["refreshToken"]})
        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["accessToken"] != data["accessToken"]
        assert refreshed["user"]["id"] == data["user"]["id"]
        assert client.get("/api/auth/me", headers=_bearer(refreshed["accessToken"])).status_code == 200
        assert client.get("/api/auth/me", headers=_bearer(data["accessToken"])).status_code == 401

    def test_refresh_missing_token(self, client):
        response = client.post("/api/auth/refresh", json={})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Refresh token required"

    def test_refresh_garbage_token(self, client):
        response = client.post("/api/auth/refresh", json={"refreshToken": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token"


class TestCookieCsrf:
    def test_cookie_post_without_csrf_header_rejected(self, client):
        _signup(client)
        response = client.post("/api/auth/logout")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_cookie_post_with_csrf_header(self, client):
        data = _signup(client).json()["data"]
        response = client.post("/api/auth/logout", headers={"X-CSRF-Token": data["csrfToken"]})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logout successful"

    def test_csrf_token_endpoint_rotates(self, client):
        data = _signup(client).json()["data"]
        fresh = client.get("/api/auth/csrf-token").json()["data"]["csrfToken"]
        assert fresh != data["csrfToken"]
        stale = client.post("/api/auth/logout", headers={"X-CSRF-Token": data["csrfToken"]})
        assert stale.status_code == 403
        ok = client.post("/api/auth/logout", headers={"X-CSRF-Token": fresh})
        assert ok.status_code == 200

    def test_bearer_requests_skip_csrf(self, client):
        data = _signup(client).json()["data"]
        response = client.post("/api/auth/logout", headers=_bearer(data["accessToken"]))
        assert response.status_code == 200


class TestLogout:
    def test_logout_invalidates_token(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        assert client.post("/api/auth/logout", headers=_bearer(data["accessToken"])).status_code == 200
        assert client.get("/api/auth/me", headers=_bearer(data["accessToken"])).status_code == 401

    def test_logout_clears_cookies(self, client):
        data = _signup(client).json()["data"]
        response = client.post("/api/auth/logout", headers=_bearer(data["accessToken"]))
        cleared = [c for c in response.headers.get_list("set-cookie") if c.startswith("access_token=")]
        assert cleared and ("Max-Age=0" in cleared[0] or "expires=" in cleared[0].lower())


class TestEmailVerification:
    def test_verify_and_reuse(self, client):
        _signup(client)
        token = _verification_token()
        response = client.post("/api/auth/verify-email", json={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Email verified successfully"
        assert get_runtime().store.get_user_by_email("a@x.com").email_verified

        again = client.post("/api/auth/verify-email", json={"token": token})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"

    def test_resend_verification(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        response = client.post("/api/auth/resend-verification", headers=_bearer(data["accessToken"]))
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Verification email sent"

    def test_resend_when_already_verified(self, client):
        data = _signup(client).json()["data"]
        client.post("/api/auth/verify-email", json={"token": _verification_token()})
        client.cookies.clear()
        response = client.post("/api/auth/resend-verification", headers=_bearer(data["accessToken"]))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Email already verified"


class TestPasswordReset:
    def _reset_token(self):
        [record] = get_runtime().store.password_reset_tokens.values()
        return record.token

    def test_forgot_password_is_uniform(self, client):
        _signup(client)
        known = client.post("/api/auth/forgot-password", json={"email": "a@x.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@x.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"] == FORGOT_PASSWORD_MESSAGE
        assert len(get_runtime().store.password_reset_tokens) == 1

    def test_reset_ends_existing_sessions(self, client):
        data = _signup(client).json()["data"]
        client.post("/api/auth/forgot-password", json={"email": "a@x.com"})
        response = client.post(
            "/api/auth/reset-password",
            json={"token": self._reset_token(), "newPassword": "Newpass1!"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Password reset successfully"
        client.cookies.clear()
        assert client.get("/api/auth/me", headers=_bearer(data["accessToken"])).status_code == 401
        login = client.post("/api/auth/login", json={"email": "a@x.com", "password": "Newpass1!"})
        assert login.status_code == 200

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/api/auth/reset-password", json={"token": "nope", "newPassword": "Newpass1!"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_token"


class TestProfileAndSessions:
    def test_patch_me(self, client):
        data = _signup(client).json()["data"]
        client.cookies.clear()
        response = client.patch(
            "/api/auth/me",
            headers=_bearer(data["accessToken"]),
            json={"name": "<b>Zed</b>", "services": ["Ads"], "profilePicture": "https://img.test/z.png"},
        )
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["name"] == "bZed/b"
        assert user["avatarInitial"] == "B"
        assert user["services"] == ["Ads"]
        assert user["profilePicture"] == "https://img.test/z.png"

    def test_sessions_list_marks_current(self, client):
        data = _signup(client).json()["data"]
        client.post("/api/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        client.cookies.clear()
        response = client.get("/api/auth/sessions", headers=_bearer(data["accessToken"]))
        sessions = response.json()["data"]["sessions"]
        assert len(sessions) == 2
        assert sum(1 for s in sessions if s["isCurrent"]) == 1
        assert {"id", "userAgent", "ipAddress", "createdAt", "lastActivityAt", "expiresAt"} <= set(sessions[0])

    def test_revoke_own_session(self, client):
        first = _signup(client).json()["data"]
        second = client.post("/api/auth/login", json={"email": "a@x.com", "password": PASSWORD}).json()["data"]
        client.cookies.clear()
        sessions = client.get("/api/auth/sessions", headers=_bearer(first["accessToken"])).json()["data"]["sessions"]
        other = next(s["id"] for s in sessions if not s["isCurrent"])
        response = client.delete(f"/api/auth/sessions/{other}", headers=_bearer(first["accessToken"]))
        assert response.status_code == 200
        assert client.get("/api/auth/me", headers=_bearer(second["accessToken"])).status_code == 401

    def test_revoking_another_users_session_is_silent(self, client):
        victim = _signup(client).json()["data"]
        attacker = _signup(client, email="b@x.com", name="Bob").json()["data"]
        client.cookies.clear()
        victim_sessions = client.get(
            "/api/auth/sessions", headers=_bearer(victim["accessToken"])
        ).json()["data"]["sessions"]
        victim_session_id = victim_sessions[0]["id"]

        response = client.delete(
            f"/api/auth/sessions/{victim_session_id}", headers=_bearer(attacker["accessToken"])
        )
        assert response.status_code == 200
        assert get_runtime().store.get_session(victim_session_id) is not None
        assert client.get("/api/auth/me", headers=_bearer(victim["accessToken"])).status_code == 200
