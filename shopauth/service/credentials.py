from __future__ import annotations

import secrets
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from shopauth.config import Settings
from shopauth.logging import get_logger
from shopauth.service.errors import InvalidCredentials
from shopauth.storage.models import VerifiedCredential, Violation
from shopauth.storage.repository import CredentialRepository

logger = get_logger(__name__)

ALLOWED_SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?/~"
MAX_PASSWORD_LENGTH = 128

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "1234567890",
        "qwerty",
        "abc123",
        "password1",
        "123456789",
        "welcome123",
        "admin123",
        "root",
        "toor",
        "pass",
        "test",
        "guest",
        "iloveyou",
        "sunshine",
        "princess",
        "football",
        "dragon",
        "qwerty123",
        "password!",
        "password@123",
        "password123!",
        "p@ssw0rd",
        "p@ssword123",
        "welcome@123",
        "welcome123!",
        "admin@123",
        "qwerty@123",
        "letmein123!",
        "changeme123!",
        "passw0rd!234",
    }
)


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


def build_password_hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.password_hash_time_cost,
        memory_cost=settings.password_hash_memory_cost,
        parallelism=settings.password_hash_parallelism,
        type=Type.ID,
    )


class CredentialVerifier:
    """Password hashing, verification and strength rules.

    Verification always costs one full argon2id comparison: when the
    identifier is unknown the candidate is checked against a throwaway hash
    computed at start-up, so response time does not reveal whether an
    account exists.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self._hasher = hasher or build_password_hasher(settings)
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def _matches(self, stored_hash: str, plaintext: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, plaintext: str) -> None:
        """Spend one verification without consulting any account."""
        self._matches(self._dummy_hash, plaintext)

    async def verify_password(self, identifier: str, plaintext: str) -> VerifiedCredential:
        normalized = normalize_identifier(identifier)
        record = await self.repository.get_by_identifier(normalized)
        stored_hash = record.password_hash if record else self._dummy_hash
        matched = self._matches(stored_hash, plaintext)
        if record is None or not matched:
            raise InvalidCredentials()
        if self._hasher.check_needs_rehash(record.password_hash):
            await self.repository.update_password_hash(record.user_id, self.hash_password(plaintext))
            logger.info("password_rehashed", user_id=record.user_id)
        return VerifiedCredential(user_id=record.user_id, identifier=record.identifier)

    async def verify_for_user(self, user_id: str, plaintext: str) -> bool:
        record = await self.repository.get_by_user_id(user_id)
        stored_hash = record.password_hash if record else self._dummy_hash
        return self._matches(stored_hash, plaintext) and record is not None

    def validate_strength(self, password: str) -> List[Violation]:
        violations: List[Violation] = []
        min_length = self.settings.password_min_length
        if len(password) < min_length:
            violations.append(
                Violation("too_short", f"must be at least {min_length} characters long")
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            violations.append(
                Violation("too_long", f"must be at most {MAX_PASSWORD_LENGTH} characters long")
            )
        if not any(ch.isupper() for ch in password):
            violations.append(Violation("missing_uppercase", "must contain an uppercase letter"))
        if not any(ch.islower() for ch in password):
            violations.append(Violation("missing_lowercase", "must contain a lowercase letter"))
        if not any(ch.isdigit() for ch in password):
            violations.append(Violation("missing_digit", "must contain a digit"))
        if not any(ch in ALLOWED_SYMBOLS for ch in password):
            violations.append(
                Violation("missing_symbol", f"must contain one of {ALLOWED_SYMBOLS}")
            )
        if password.lower() in COMMON_PASSWORDS:
            violations.append(Violation("common_password", "is too common"))
        return violations


__all__ = [
    "ALLOWED_SYMBOLS",
    "COMMON_PASSWORDS",
    "CredentialVerifier",
    "build_password_hasher",
    "normalize_identifier",
]
