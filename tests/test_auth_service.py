"""Unit tests for the auth service.

Tests for:
- Registration and password rules
- Login, throttling and cumulative lockout
- Refresh, logout and session-aware authentication
- Password reset and change flows
"""

from unittest.mock import patch

import pytest

from shopauth.config import get_settings
from shopauth.service.auth import AuthService
from shopauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentials,
    InvalidResetToken,
    RateLimitError,
    SessionRevoked,
    TokenReuseDetected,
    ValidationError,
)
from shopauth.storage.memory import MemoryCredentialRepository, MemoryStore
from shopauth.storage.models import DeviceStatus

PASSWORD = "TestPassword123!"
NEW_PASSWORD = "Fresh-Passw0rd-42"
EMAIL = "x@example.com"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send_reset(self, identifier, reset_token, expires_in):
        self.sent.append((identifier, reset_token, expires_in))


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def repo():
    return MemoryCredentialRepository()


@pytest.fixture
def auth(settings, repo, notifier, clock):
    return AuthService(
        settings,
        credentials=repo,
        store=MemoryStore(clock=clock),
        notifier=notifier,
        clock=clock,
    )


async def _register(auth, email=EMAIL, password=PASSWORD):
    return await auth.register(email, password, client_ip="10.0.0.1")


class TestRegister:
    async def test_register_normalizes_identifier(self, auth):
        record = await _register(auth, email="  X@Example.com")
        assert record.identifier == "x@example.com"
        assert record.password_hash.startswith("$argon2id$")

    async def test_weak_password_lists_violations(self, auth):
        with pytest.raises(ValidationError) as exc_info:
            await _register(auth, password="short1")

        codes = {v["code"] for v in exc_info.value.detail["violations"]}
        assert codes == {"too_short", "missing_uppercase", "missing_symbol"}

    async def test_duplicate_email_conflicts(self, auth):
        await _register(auth)
        with pytest.raises(ConflictError):
            await _register(auth, email="X@EXAMPLE.COM")

    async def test_registration_throttled_per_address(self, auth, settings):
        for i in range(settings.register_max_attempts):
            await _register(auth, email=f"user{i}@example.com")
        with pytest.raises(RateLimitError):
            await _register(auth, email="one-more@example.com")


class TestLogin:
    async def test_login_issues_tokens_for_fresh_session(self, auth):
        record = await _register(auth)

        result = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1", fingerprint="laptop")

        claims = auth.tokens.validate(result.tokens.access_token)
        assert claims["sub"] == record.user_id
        assert claims["sid"] == result.session.session_id
        assert result.user_id == record.user_id
        assert (await auth.sessions.get_active(result.session.session_id)) is not None

    async def test_new_device_reported_once(self, auth):
        await _register(auth)

        first = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1", fingerprint="laptop")
        second = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1", fingerprint="laptop")

        assert first.device_status is DeviceStatus.NEW_DEVICE
        assert first.warnings == ["new_device"]
        assert second.device_status is DeviceStatus.KNOWN
        assert second.warnings == []

    async def test_unknown_account_and_wrong_password_indistinguishable(self, auth):
        await _register(auth)

        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.1")
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("nobody@example.com", "Wrong-Password-1", client_ip="10.0.0.1")

        assert str(wrong.value) == str(unknown.value)
        assert wrong.value.detail == unknown.value.detail

    async def test_failed_login_costs_the_same_repository_calls(self, auth, repo):
        await _register(auth)
        calls = []

        def counting(name):
            method = getattr(repo, name)

            async def wrapper(*args, **kwargs):
                calls.append(name)
                return await method(*args, **kwargs)

            return wrapper

        for name in ("get_by_identifier", "get_by_user_id", "update_lockout"):
            setattr(repo, name, counting(name))

        with pytest.raises(InvalidCredentials):
            await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.1")
        known = list(calls)
        calls.clear()
        with pytest.raises(InvalidCredentials):
            await auth.login("nobody@example.com", "Wrong-Password-1", client_ip="10.0.0.2")

        assert "update_lockout" in known
        assert calls == known

    async def test_sixth_attempt_in_window_is_throttled(self, auth, settings):
        await _register(auth)
        for _ in range(settings.login_max_attempts):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.1")

        with pytest.raises(RateLimitError) as exc_info:
            await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        assert exc_info.value.retry_after > 0

    async def test_cumulative_failures_lock_account(self, auth, repo, settings, clock):
        await _register(auth)
        window = settings.login_window

        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.1")
        clock.advance(window)
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.2")

        # Tenth failure locks the account
        with pytest.raises(AccountLockedError) as exc_info:
            await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.3")
        assert exc_info.value.retry_after == settings.account_lock_duration
        record = await repo.get_by_identifier(EMAIL)
        assert record.locked_until.timestamp() == clock() + settings.account_lock_duration

        # Correct credentials do not help while locked
        clock.advance(window)
        with pytest.raises(AccountLockedError) as exc_info:
            await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.4")
        assert exc_info.value.retry_after == settings.account_lock_duration - window

        clock.advance(settings.account_lock_duration - window)
        result = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.4")
        assert result.user_id == record.user_id
        assert record.locked_until is None
        assert record.failed_attempt_count == 0

    async def test_locked_path_still_hashes(self, auth, settings):
        await _register(auth)
        for _ in range(settings.account_lock_threshold):
            await auth.limiter.record_failed_attempt(EMAIL)

        with patch.object(auth.verifier, "verify_dummy") as mock_dummy:
            with pytest.raises(AccountLockedError):
                await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        mock_dummy.assert_called_once_with(PASSWORD)

    async def test_success_resets_failure_count(self, auth, repo):
        await _register(auth)
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "Wrong-Password-1", client_ip="10.0.0.1")
        assert (await repo.get_by_identifier(EMAIL)).failed_attempt_count == 3

        await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        assert (await repo.get_by_identifier(EMAIL)).failed_attempt_count == 0


class TestSessionLifecycle:
    async def test_refresh_then_replay(self, auth):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")

        tokens, session = await auth.refresh(login.tokens.refresh_token)
        assert session.session_id == login.session.session_id
        assert session.csrf_token == login.session.csrf_token

        with pytest.raises(TokenReuseDetected):
            await auth.refresh(login.tokens.refresh_token)
        with pytest.raises(SessionRevoked):
            await auth.refresh(tokens.refresh_token)
        with pytest.raises(SessionRevoked):
            await auth.authenticate(tokens.access_token)

    async def test_logout_is_idempotent(self, auth):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")

        await auth.logout(login.session.session_id)
        await auth.logout(login.session.session_id)

        with pytest.raises(SessionRevoked):
            await auth.authenticate(login.tokens.access_token)
        # Stateless validation still accepts the token until it expires
        assert auth.tokens.validate(login.tokens.access_token)["sid"] == login.session.session_id

    async def test_logout_by_stale_refresh_token_is_ignored(self, auth):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        tokens, _ = await auth.refresh(login.tokens.refresh_token)

        await auth.logout_by_refresh_token(login.tokens.refresh_token)
        assert await auth.sessions.get_active(login.session.session_id) is not None

        await auth.logout_by_refresh_token(tokens.refresh_token)
        assert await auth.sessions.get_active(login.session.session_id) is None

    async def test_logout_all(self, auth):
        record = await _register(auth)
        for _ in range(3):
            await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")

        assert len(await auth.list_sessions(record.user_id)) == 3
        assert await auth.logout_all(record.user_id) == 3
        assert await auth.list_sessions(record.user_id) == []


class TestPasswordReset:
    async def test_reset_token_is_single_use(self, auth, notifier):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")

        await auth.forgot_password(EMAIL)
        assert len(notifier.sent) == 1
        identifier, reset_token, expires_in = notifier.sent[0]
        assert identifier == EMAIL
        assert expires_in == 900

        await auth.reset_password(reset_token, NEW_PASSWORD)

        with pytest.raises(InvalidResetToken):
            await auth.reset_password(reset_token, NEW_PASSWORD)
        with pytest.raises(SessionRevoked):
            await auth.authenticate(login.tokens.access_token)
        with pytest.raises(InvalidCredentials):
            await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        await auth.login(EMAIL, NEW_PASSWORD, client_ip="10.0.0.1")

    async def test_unknown_account_sends_nothing(self, auth, notifier):
        await auth.forgot_password("nobody@example.com")
        assert notifier.sent == []

    async def test_weak_password_does_not_consume_token(self, auth, notifier):
        await _register(auth)
        await auth.forgot_password(EMAIL)
        reset_token = notifier.sent[0][1]

        with pytest.raises(ValidationError):
            await auth.reset_password(reset_token, "weak")
        await auth.reset_password(reset_token, NEW_PASSWORD)

    async def test_reset_token_expires(self, auth, notifier, settings, clock):
        await _register(auth)
        await auth.forgot_password(EMAIL)
        clock.advance(settings.password_reset_ttl)

        with pytest.raises(InvalidResetToken):
            await auth.reset_password(notifier.sent[0][1], NEW_PASSWORD)

    async def test_reset_clears_lockout(self, auth, notifier, settings):
        await _register(auth)
        for _ in range(settings.account_lock_threshold):
            await auth.limiter.record_failed_attempt(EMAIL)

        await auth.forgot_password(EMAIL)
        await auth.reset_password(notifier.sent[0][1], NEW_PASSWORD)

        await auth.login(EMAIL, NEW_PASSWORD, client_ip="10.0.0.1")


class TestChangePassword:
    async def test_change_revokes_other_sessions(self, auth):
        await _register(auth)
        current = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        other = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.2")
        ctx = await auth.authenticate(current.tokens.access_token)

        revoked = await auth.change_password(ctx, PASSWORD, NEW_PASSWORD)

        assert revoked == 1
        await auth.authenticate(current.tokens.access_token)
        with pytest.raises(SessionRevoked):
            await auth.authenticate(other.tokens.access_token)

    async def test_wrong_current_password(self, auth):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        ctx = await auth.authenticate(login.tokens.access_token)

        with pytest.raises(InvalidCredentials):
            await auth.change_password(ctx, "Not-The-Password-1", NEW_PASSWORD)

    async def test_unchanged_password_rejected(self, auth):
        await _register(auth)
        login = await auth.login(EMAIL, PASSWORD, client_ip="10.0.0.1")
        ctx = await auth.authenticate(login.tokens.access_token)

        with pytest.raises(ValidationError) as exc_info:
            await auth.change_password(ctx, PASSWORD, PASSWORD)
        codes = {v["code"] for v in exc_info.value.detail["violations"]}
        assert codes == {"unchanged"}
