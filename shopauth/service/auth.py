from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from argon2 import PasswordHasher

from shopauth.config import Settings
from shopauth.logging import get_logger, identifier_digest
from shopauth.service.anomaly import DeviceAnomalyDetector
from shopauth.service.credentials import CredentialVerifier, normalize_identifier
from shopauth.service.csrf import CsrfGuard
from shopauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentials,
    InvalidResetToken,
    ServiceUnavailable,
    SessionRevoked,
    TokenInvalidSignature,
    ValidationError,
)
from shopauth.service.notifications import LoggingResetNotifier, PasswordResetNotifier
from shopauth.service.rate_limit import RateLimiter
from shopauth.service.sessions import SessionStore, new_session_id
from shopauth.service.tokens import TokenIssuer, hash_refresh_token
from shopauth.storage.common import Clock, SharedStore, system_clock
from shopauth.storage.errors import ConstraintViolation, StoreUnavailable
from shopauth.storage.models import (
    CredentialRecord,
    DeviceStatus,
    LoginResult,
    SessionRecord,
    TokenPair,
    Violation,
)
from shopauth.storage.repository import CredentialRepository

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    session: SessionRecord
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.session.session_id


def _violations_detail(violations: List[Violation]) -> dict:
    return {"violations": [{"code": v.code, "message": v.message} for v in violations]}


class AuthService:
    """Login, registration, token refresh, logout and password lifecycle.

    Composes the rate limiter, credential verifier, anomaly detector, token
    issuer and session store; holds no cross-request state of its own.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        credentials: CredentialRepository,
        store: SharedStore,
        notifier: Optional[PasswordResetNotifier] = None,
        clock: Clock = system_clock,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.store = store
        self.notifier: PasswordResetNotifier = notifier or LoggingResetNotifier()
        self.verifier = CredentialVerifier(credentials, settings, hasher=hasher)
        self.limiter = RateLimiter(store, settings, credentials=credentials, clock=clock)
        self.sessions = SessionStore(store, settings, clock=clock)
        self.tokens = TokenIssuer(settings, self.sessions, clock=clock)
        self.csrf = CsrfGuard(settings.csrf_exempt_paths)
        self.devices = DeviceAnomalyDetector(store, settings)

    # -- registration ------------------------------------------------------

    async def register(self, email: str, password: str, *, client_ip: str) -> CredentialRecord:
        await self.limiter.check_and_increment(
            "register:ip",
            client_ip,
            self.settings.register_max_attempts,
            self.settings.register_window,
        )
        violations = self.verifier.validate_strength(password)
        if violations:
            raise ValidationError(
                "password does not meet requirements", detail=_violations_detail(violations)
            )
        identifier = normalize_identifier(email)
        try:
            record = await self.credentials.create(identifier, self.verifier.hash_password(password))
        except ConstraintViolation as exc:
            logger.info("registration_conflict", account=identifier_digest(identifier))
            raise ConflictError("email already registered") from exc
        logger.info("user_registered", user_id=record.user_id)
        return record

    # -- login -------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        client_ip: str,
        fingerprint: str = "",
    ) -> LoginResult:
        account = normalize_identifier(email)
        await self.limiter.check_and_increment(
            "login:ip", client_ip, self.settings.login_ip_max_attempts, self.settings.login_window
        )
        await self.limiter.check_and_increment(
            "login:account", account, self.settings.login_max_attempts, self.settings.login_window
        )
        try:
            await self.limiter.check_lockout(account)
        except AccountLockedError:
            # Same hashing cost as an unlocked attempt.
            self.verifier.verify_dummy(password)
            logger.info("login_rejected_locked", account=identifier_digest(account))
            raise

        try:
            verified = await self.verifier.verify_password(account, password)
        except InvalidCredentials:
            record = await self.credentials.get_by_identifier(account)
            status = await self.limiter.record_failed_attempt(
                account, user_id=record.user_id if record else None
            )
            logger.info(
                "login_failed",
                account=identifier_digest(account),
                failed_attempts=status.failed_attempts,
            )
            if status.locked:
                raise AccountLockedError(retry_after=status.retry_after)
            raise

        await self.limiter.record_success(account)
        device_status = await self.devices.check(verified.user_id, fingerprint)
        session, tokens = await self._open_session(verified.user_id, fingerprint)
        await self.devices.remember(verified.user_id, fingerprint)
        logger.info(
            "login_succeeded",
            user_id=verified.user_id,
            session_id=session.session_id,
            device_status=device_status.value,
        )
        warnings = ["new_device"] if device_status is DeviceStatus.NEW_DEVICE else []
        return LoginResult(
            user_id=verified.user_id,
            session=session,
            tokens=tokens,
            device_status=device_status,
            warnings=warnings,
        )

    async def _open_session(self, user_id: str, fingerprint: str) -> tuple[SessionRecord, TokenPair]:
        session_id = new_session_id()
        tokens = self.tokens.issue(user_id, session_id)
        session = await self.sessions.create(
            user_id,
            fingerprint,
            session_id=session_id,
            refresh_token_hash=hash_refresh_token(tokens.refresh_token),
            csrf_token=self.csrf.generate_token(),
        )
        return session, tokens

    # -- session lifecycle ---------------------------------------------------

    async def refresh(self, refresh_token: str) -> tuple[TokenPair, SessionRecord]:
        tokens = await self.tokens.rotate(refresh_token)
        session = await self.sessions.get(tokens.session_id)
        if session is None:
            raise SessionRevoked()
        return tokens, session

    async def logout(self, session_id: Optional[str]) -> None:
        if session_id:
            await self.sessions.revoke(session_id, reason="logout")

    async def logout_by_refresh_token(self, refresh_token: Optional[str]) -> None:
        """Revoke the session a still-current refresh token belongs to.

        Lets a browser whose access token already expired log out; a stale
        or foreign token is ignored.
        """
        if not refresh_token:
            return
        session_id = refresh_token.partition(".")[0]
        session = await self.sessions.get(session_id) if session_id else None
        if session is None:
            return
        if secrets.compare_digest(session.refresh_token_hash, hash_refresh_token(refresh_token)):
            await self.sessions.revoke(session_id, reason="logout")

    async def logout_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        return await self.sessions.revoke_all(
            user_id, except_session_id=except_session_id, reason="logout_all"
        )

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        return await self.sessions.list_active(user_id)

    async def authenticate(self, access_token: str) -> AuthContext:
        """Validate an access token and require its session to be live."""
        claims = self.tokens.validate(access_token)
        session = await self.sessions.get_active(claims["sid"])
        if session is None:
            raise SessionRevoked()
        if session.user_id != claims["sub"]:
            raise TokenInvalidSignature()
        return AuthContext(user_id=session.user_id, session=session, claims=claims)

    async def get_profile(self, ctx: AuthContext) -> CredentialRecord:
        record = await self.credentials.get_by_user_id(ctx.user_id)
        if record is None:
            raise SessionRevoked()
        return record

    # -- password lifecycle ------------------------------------------------

    @staticmethod
    def _reset_key(reset_token: str) -> str:
        return f"auth:reset:{hashlib.sha256(reset_token.encode()).hexdigest()}"

    async def forgot_password(self, email: str) -> None:
        """Issue a reset token if the account exists; callers cannot tell either way."""
        account = normalize_identifier(email)
        await self.limiter.check_and_increment(
            "reset:account", account, self.settings.reset_max_attempts, self.settings.reset_window
        )
        record = await self.credentials.get_by_identifier(account)
        if record is None:
            logger.info("password_reset_unknown_account", account=identifier_digest(account))
            return
        reset_token = secrets.token_urlsafe(32)
        ttl = self.settings.password_reset_ttl
        try:
            await self.store.set(self._reset_key(reset_token), record.user_id, ttl)
        except StoreUnavailable as exc:
            raise ServiceUnavailable("reset token store unavailable") from exc
        await self.notifier.send_reset(record.identifier, reset_token, ttl)
        logger.info("password_reset_requested", user_id=record.user_id)

    async def reset_password(self, reset_token: str, new_password: str) -> None:
        violations = self.verifier.validate_strength(new_password)
        if violations:
            raise ValidationError(
                "password does not meet requirements", detail=_violations_detail(violations)
            )
        try:
            user_id = await self.store.pop(self._reset_key(reset_token))
        except StoreUnavailable as exc:
            raise ServiceUnavailable("reset token store unavailable") from exc
        record = await self.credentials.get_by_user_id(user_id) if user_id else None
        if record is None:
            logger.warning("password_reset_invalid_token")
            raise InvalidResetToken()
        await self.credentials.update_password_hash(
            record.user_id, self.verifier.hash_password(new_password)
        )
        await self.limiter.clear_lockout(record.identifier)
        revoked = await self.sessions.revoke_all(record.user_id, reason="password_reset")
        logger.info("password_reset_completed", user_id=record.user_id, sessions_revoked=revoked)

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> int:
        if not await self.verifier.verify_for_user(ctx.user_id, current_password):
            raise InvalidCredentials()
        violations = self.verifier.validate_strength(new_password)
        if new_password == current_password:
            violations.append(Violation("unchanged", "must differ from the current password"))
        if violations:
            raise ValidationError(
                "password does not meet requirements", detail=_violations_detail(violations)
            )
        await self.credentials.update_password_hash(
            ctx.user_id, self.verifier.hash_password(new_password)
        )
        revoked = await self.sessions.revoke_all(
            ctx.user_id, except_session_id=ctx.session_id, reason="password_changed"
        )
        logger.info("password_changed", user_id=ctx.user_id, sessions_revoked=revoked)
        return revoked


__all__ = ["AuthContext", "AuthService"]
