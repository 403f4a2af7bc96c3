"""Integration tests for the /auth HTTP surface.

Tests the complete flow including:
- Registration and login
- Throttling and account lockout
- Refresh rotation and reuse detection
- CSRF enforcement
- Logout, password reset and change
"""

import pytest
from fastapi.testclient import TestClient

from shopauth import app as app_module
from shopauth.service.runtime import reset_runtime_for_tests

EMAIL = "x@example.com"
PASSWORD = "TestPassword123!"
NEW_PASSWORD = "Fresh-Passw0rd-42"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send_reset(self, identifier, reset_token, expires_in):
        self.sent.append((identifier, reset_token, expires_in))


@pytest.fixture
def client():
    """Create a test client; HTTPS so Secure cookies round-trip."""
    return TestClient(app_module.app, base_url="https://testserver")


def _register(client, email=EMAIL, password=PASSWORD):
    return client.post("/auth/register", json={"email": email, "password": password})


def _login(client, email=EMAIL, password=PASSWORD, **extra):
    return client.post("/auth/login", json={"email": email, "password": password, **extra})


def _error_code(response):
    return response.json()["error"]["code"]


class TestRegistration:
    def test_register_creates_account(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == EMAIL
        assert body["data"]["user_id"]

    def test_weak_password_lists_rules(self, client):
        response = _register(client, password="short1")

        assert response.status_code == 422
        assert _error_code(response) == "validation_error"
        codes = {v["code"] for v in response.json()["error"]["details"]["violations"]}
        assert {"too_short", "missing_uppercase", "missing_symbol"} <= codes

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client, email="X@Example.com")

        assert response.status_code == 409
        assert _error_code(response) == "conflict"

    def test_invalid_email_does_not_echo_input(self, client):
        response = _register(client, email="not-an-email")

        assert response.status_code == 422
        assert _error_code(response) == "validation_error"
        assert PASSWORD not in response.text


class TestLogin:
    def test_login_sets_cookies(self, client):
        _register(client)

        response = _login(client, device_fingerprint="laptop")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "Bearer"
        assert data["new_device"] is True
        cookies = {
            header.split("=", 1)[0]: header.lower()
            for header in response.headers.get_list("set-cookie")
        }
        for name in ("access_token", "refresh_token"):
            assert "httponly" in cookies[name]
            assert "secure" in cookies[name]
            assert "samesite=strict" in cookies[name]
        assert "path=/auth" in cookies["refresh_token"]
        assert "httponly" not in cookies["csrf_token"]
        assert response.headers["cache-control"] == "no-store"

    def test_known_device_via_header(self, client):
        _register(client)
        _login(client, device_fingerprint="laptop")

        response = client.post(
            "/auth/login",
            json={"email": EMAIL, "password": PASSWORD},
            headers={"X-Device-Fingerprint": "laptop"},
        )

        assert response.json()["data"]["new_device"] is False

    def test_unknown_account_and_wrong_password_match(self, client):
        _register(client)

        wrong = _login(client, password="Wrong-Password-1")
        unknown = _login(client, email="nobody@example.com", password="Wrong-Password-1")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_sixth_failed_login_is_throttled(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wrong-Password-1").status_code == 401

        response = _login(client, password="Wrong-Password-1")

        assert response.status_code == 429
        assert _error_code(response) == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_tenth_failure_locks_account(self, client, clock):
        reset_runtime_for_tests(clock=clock)
        _register(client)

        for _ in range(5):
            assert _login(client, password="Wrong-Password-1").status_code == 401
        clock.advance(900)
        for _ in range(4):
            assert _login(client, password="Wrong-Password-1").status_code == 401

        locked = _login(client, password="Wrong-Password-1")
        assert locked.status_code == 403
        assert _error_code(locked) == "account_locked"
        assert locked.headers["Retry-After"] == "3600"

        clock.advance(900)
        still_locked = _login(client)
        assert still_locked.status_code == 403
        assert still_locked.headers["Retry-After"] == "2700"

        clock.advance(2700)
        assert _login(client).status_code == 200


class TestRefresh:
    def test_replayed_refresh_token_revokes_session(self, client):
        _register(client)
        first = _login(client).json()["data"]["refresh_token"]

        rotated = client.post("/auth/refresh", json={"refresh_token": first})
        assert rotated.status_code == 200
        assert rotated.headers["X-RateLimit-Limit"] == "10"
        second = rotated.json()["data"]["refresh_token"]
        assert second != first

        replay = client.post("/auth/refresh", json={"refresh_token": first})
        assert replay.status_code == 401
        assert _error_code(replay) == "token_reuse_detected"

        after = client.post("/auth/refresh", json={"refresh_token": second})
        assert after.status_code == 401
        assert _error_code(after) == "session_revoked"

    def test_refresh_from_cookie(self, client):
        _register(client)
        _login(client)

        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/auth/refresh")

        assert response.status_code == 401
        assert _error_code(response) == "invalid_refresh_token"


class TestCsrf:
    def test_change_password_without_header_rejected(self, client):
        _register(client)
        _login(client)

        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        )

        assert response.status_code == 403
        assert _error_code(response) == "csrf_token_missing"

    def test_change_password_with_wrong_header_rejected(self, client):
        _register(client)
        _login(client)

        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers={"X-CSRF-Token": "guessed"},
        )

        assert response.status_code == 403
        assert _error_code(response) == "csrf_token_mismatch"

    def test_change_password_with_header(self, client):
        _register(client)
        csrf = _login(client).json()["data"]["csrf_token"]

        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers={"X-CSRF-Token": csrf},
        )

        assert response.status_code == 200
        assert response.json()["data"]["other_sessions_revoked"] == 0
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_current_password_guesses_are_throttled(self, client):
        _register(client)
        csrf = _login(client).json()["data"]["csrf_token"]
        attempt = {"current_password": "Wrong-Password-1", "new_password": NEW_PASSWORD}

        for _ in range(5):
            response = client.post(
                "/auth/change-password", json=attempt, headers={"X-CSRF-Token": csrf}
            )
            assert response.status_code == 401

        response = client.post("/auth/change-password", json=attempt, headers={"X-CSRF-Token": csrf})

        assert response.status_code == 429
        assert _error_code(response) == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_safe_methods_need_no_token(self, client):
        _register(client)
        _login(client)

        response = client.get("/auth/me")

        assert response.status_code == 200
        assert response.json()["data"]["email"] == EMAIL


class TestLogout:
    def test_logout_twice_succeeds(self, client):
        _register(client)
        data = _login(client).json()["data"]
        headers = {"X-CSRF-Token": data["csrf_token"]}

        first = client.post("/auth/logout", headers=headers)
        assert first.status_code == 200

        # The first response cleared the cookies; resend the pair
        client.cookies.set("csrf_token", data["csrf_token"])
        second = client.post("/auth/logout", headers=headers)
        assert second.status_code == 200

        refresh = client.post("/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert _error_code(refresh) == "session_revoked"

    def test_logout_all(self, client):
        _register(client)
        _login(client)
        data = _login(client).json()["data"]

        response = client.post("/auth/logout-all", headers={"X-CSRF-Token": data["csrf_token"]})

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2


class TestSessions:
    def test_bearer_token_lists_sessions(self, client):
        _register(client)
        _login(client)
        data = _login(client).json()["data"]
        client.cookies.clear()

        response = client.get(
            "/auth/sessions", headers={"Authorization": f"Bearer {data['access_token']}"}
        )

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 2
        assert [item["current"] for item in items].count(True) == 1

    def test_unauthenticated_request(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"


class TestPasswordReset:
    def test_forgot_password_does_not_reveal_accounts(self, client):
        _register(client)

        known = client.post("/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_flow(self, client):
        notifier = RecordingNotifier()
        reset_runtime_for_tests(notifier=notifier)
        _register(client)
        _login(client)

        client.post("/auth/forgot-password", json={"email": EMAIL})
        reset_token = notifier.sent[0][1]

        response = client.post(
            "/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD}
        )
        assert response.status_code == 200

        reused = client.post(
            "/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD}
        )
        assert reused.status_code == 422
        assert _error_code(reused) == "invalid_reset_token"

        assert _login(client).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200


class TestEnvelope:
    def test_request_id_echoed(self, client):
        response = client.get("/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
        assert response.json()["status"] == "error"

    def test_unknown_route(self, client):
        response = client.get("/auth/nope")

        assert response.status_code == 404
        assert _error_code(response) == "not_found"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["checks"]["shared_store"] == "ok"
