from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _ts(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


@dataclass
class CredentialRecord:
    user_id: str
    identifier: str
    password_hash: str = field(repr=False)
    failed_attempt_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class SessionRecord:
    """Server-side session state.

    ``refresh_token_hash`` is the head of the rotation chain: the SHA-256 of
    the single refresh token currently allowed to mint a new pair.
    """

    session_id: str
    user_id: str
    device_fingerprint: str
    created_at: datetime
    expires_at: datetime
    csrf_token: str = field(repr=False)
    refresh_token_hash: str = field(repr=False)
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now

    def to_hash(self) -> Dict[str, str]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "device_fingerprint": self.device_fingerprint,
            "created_at": repr(self.created_at.timestamp()),
            "expires_at": repr(self.expires_at.timestamp()),
            "csrf_token": self.csrf_token,
            "refresh_token_hash": self.refresh_token_hash,
            "revoked": "1" if self.revoked else "0",
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            device_fingerprint=data.get("device_fingerprint", ""),
            created_at=_ts(float(data["created_at"])),
            expires_at=_ts(float(data["expires_at"])),
            csrf_token=data["csrf_token"],
            refresh_token_hash=data["refresh_token_hash"],
            revoked=data.get("revoked") == "1",
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "Bearer"


@dataclass(frozen=True)
class VerifiedCredential:
    user_id: str
    identifier: str


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    failed_attempts: int
    retry_after: int = 0


class DeviceStatus(str, enum.Enum):
    KNOWN = "known"
    NEW_DEVICE = "new_device"


@dataclass(frozen=True)
class Violation:
    code: str
    message: str


@dataclass
class LoginResult:
    user_id: str
    session: SessionRecord
    tokens: TokenPair
    device_status: DeviceStatus
    warnings: List[str] = field(default_factory=list)
