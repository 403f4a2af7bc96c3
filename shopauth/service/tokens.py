from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.exceptions import InvalidTokenError

from shopauth.config import Settings
from shopauth.logging import get_logger, log_security_event
from shopauth.service.errors import (
    InvalidRefreshToken,
    SessionRevoked,
    TokenExpired,
    TokenInvalidSignature,
    TokenReuseDetected,
)
from shopauth.service.sessions import SessionStore
from shopauth.storage.common import CasResult, Clock, system_clock
from shopauth.storage.models import TokenPair

logger = get_logger(__name__)

ALGORITHM = "RS256"
_REQUIRED_CLAIMS = ["sub", "sid", "exp", "iat", "iss", "aud", "jti", "typ"]
_MAX_REFRESH_TOKEN_LENGTH = 256


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_rsa_keypair() -> tuple[str, str]:
    """Return a fresh ``(private_pem, public_pem)`` pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _public_from_private(private_pem: str) -> str:
    private_key = serialization.load_pem_private_key(private_pem.encode(), password=None)
    return (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


class TokenIssuer:
    """Mints RS256 access tokens and opaque, rotating refresh tokens.

    Access tokens are validated statelessly (signature, expiry, issuer,
    audience). Refresh tokens have the form ``<session_id>.<secret>``; only
    their SHA-256 is stored, as the session's refresh head. Rotation is a
    single compare-and-swap on that head, so of two requests presenting the
    same refresh token exactly one can succeed.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self._clock = clock
        private_pem = settings.load_private_key_pem()
        public_pem = settings.load_public_key_pem()
        if private_pem is None:
            if not settings.test_mode:
                raise RuntimeError("JWT signing key is not configured")
            private_pem, public_pem = generate_rsa_keypair()
            logger.warning("jwt_ephemeral_keypair_generated")
        self._private_key = private_pem
        self._public_key = public_pem or _public_from_private(private_pem)

    @property
    def public_key_pem(self) -> str:
        return self._public_key

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def issue(self, user_id: str, session_id: str) -> TokenPair:
        now = self._now()
        access_expires_at = now + timedelta(seconds=self.settings.access_token_ttl)
        claims = {
            "sub": user_id,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int(access_expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": uuid.uuid4().hex,
            "typ": "access",
        }
        access_token = jwt.encode(claims, self._private_key, algorithm=ALGORITHM)
        refresh_token = f"{session_id}.{secrets.token_urlsafe(32)}"
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=now + timedelta(seconds=self.settings.refresh_token_ttl),
            session_id=session_id,
        )

    def validate(self, access_token: str) -> Dict[str, Any]:
        """Check signature and expiry; never consults session state."""
        try:
            claims = jwt.decode(
                access_token,
                self._public_key,
                algorithms=[ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                # Expiry is checked below against the injected clock.
                options={"require": _REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except InvalidTokenError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise TokenInvalidSignature() from exc
        if claims.get("typ") != "access":
            raise TokenInvalidSignature()
        if int(claims["exp"]) <= int(self._clock()):
            raise TokenExpired()
        return claims

    @staticmethod
    def _split_refresh_token(refresh_token: str) -> Optional[str]:
        if not refresh_token or len(refresh_token) > _MAX_REFRESH_TOKEN_LENGTH:
            return None
        session_id, sep, secret = refresh_token.partition(".")
        if not sep or not session_id or not secret:
            return None
        return session_id

    async def rotate(self, refresh_token: str) -> TokenPair:
        session_id = self._split_refresh_token(refresh_token)
        if session_id is None:
            raise InvalidRefreshToken()
        session = await self.sessions.get(session_id)
        if session is None:
            raise InvalidRefreshToken()
        if session.revoked:
            raise SessionRevoked()
        if session.expires_at <= self._now():
            raise InvalidRefreshToken()

        pair = self.issue(session.user_id, session_id)
        outcome = await self.sessions.advance_refresh_head(
            session_id, hash_refresh_token(refresh_token), hash_refresh_token(pair.refresh_token)
        )
        if outcome is CasResult.SWAPPED:
            logger.info("refresh_token_rotated", session_id=session_id, user_id=session.user_id)
            return pair
        if outcome is CasResult.MISSING:
            raise InvalidRefreshToken()

        current = await self.sessions.get(session_id)
        if current is None:
            raise InvalidRefreshToken()
        if current.revoked:
            raise SessionRevoked()
        await self.sessions.revoke(session_id, reason="refresh_token_reuse")
        log_security_event(
            logger,
            "refresh_token_reuse_detected",
            session_id=session_id,
            user_id=current.user_id,
        )
        raise TokenReuseDetected()


__all__ = ["TokenIssuer", "generate_rsa_keypair", "hash_refresh_token"]
