from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

from shopauth.config import Settings
from shopauth.logging import get_logger, log_security_event
from shopauth.service.errors import AccountLockedError, RateLimitError, ServiceUnavailable
from shopauth.storage.common import Clock, SharedStore, system_clock
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.models import LockoutStatus, RateLimitDecision
from shopauth.storage.repository import CredentialRepository

logger = get_logger(__name__)


def _digest(value: str) -> str:
    # Hashing keeps user-controlled input out of key delimiters.
    return hashlib.sha256(value.encode()).hexdigest()


class RateLimiter:
    """Fixed-window request throttles and cumulative account lockout.

    Two separate mechanisms share this class:

    * ``check_and_increment`` counts requests per ``(action, identifier)`` in a
      fixed window and rejects once the limit is exceeded.
    * ``record_failed_attempt`` counts credential failures per account and,
      at ``ACCOUNT_LOCK_THRESHOLD``, locks the account for
      ``ACCOUNT_LOCK_DURATION`` no matter which address the attempts came from.

    Accounts are keyed by normalized login identifier, so unknown and known
    identifiers are throttled and locked identically. Every state change is
    mirrored onto the credential record with one repository write keyed by
    that identifier, whether or not an account exists for it. Any
    shared-store failure fails closed.
    """

    def __init__(
        self,
        store: SharedStore,
        settings: Settings,
        *,
        credentials: Optional[CredentialRepository] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self._clock = clock

    @staticmethod
    def _window_key(action: str, identifier: str) -> str:
        return f"rate:{action}:{_digest(identifier)}"

    @staticmethod
    def _lock_key(account: str) -> str:
        return f"lockout:lock:{_digest(account)}"

    @staticmethod
    def _failure_key(account: str) -> str:
        return f"lockout:fail:{_digest(account)}"

    async def check_and_increment(
        self, action: str, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        try:
            count, retry_after = await self.store.incr_window(
                self._window_key(action, identifier), window_seconds
            )
        except StoreUnavailable as exc:
            logger.error("rate_limit_store_unavailable", action=action)
            raise ServiceUnavailable("rate limiter unavailable") from exc
        decision = RateLimitDecision(
            allowed=count <= limit, count=count, limit=limit, retry_after=retry_after
        )
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded", action=action, count=count, limit=limit, retry_after=retry_after
            )
            raise RateLimitError(retry_after=retry_after, detail={"action": action})
        return decision

    async def check_lockout(self, account: str) -> None:
        try:
            retry_after = await self.store.ttl(self._lock_key(account))
        except StoreUnavailable as exc:
            logger.error("lockout_store_unavailable", operation="check")
            raise ServiceUnavailable("lockout state unavailable") from exc
        # ttl() is 0 for an absent or just-expired lock.
        if retry_after <= 0:
            return
        raise AccountLockedError(retry_after=retry_after)

    async def record_failed_attempt(
        self, account: str, *, user_id: Optional[str] = None
    ) -> LockoutStatus:
        duration = self.settings.account_lock_duration
        try:
            locked, attempts = await self.store.record_failure(
                self._failure_key(account),
                self._lock_key(account),
                self.settings.account_lock_threshold,
                duration,
                duration,
            )
            retry_after = await self.store.ttl(self._lock_key(account)) if locked else 0
        except StoreUnavailable as exc:
            logger.error("lockout_store_unavailable", operation="record_failure")
            raise ServiceUnavailable("lockout state unavailable") from exc

        if locked and attempts != -1:
            log_security_event(
                logger,
                "account_locked",
                user_id=user_id,
                attempts=attempts,
                lock_seconds=duration,
            )
        status = LockoutStatus(
            locked=locked,
            failed_attempts=attempts,
            retry_after=retry_after or (duration if locked else 0),
        )
        await self._mirror(account, status)
        return status

    async def record_success(self, account: str) -> None:
        try:
            await self.store.delete(self._failure_key(account))
        except StoreUnavailable as exc:
            logger.error("lockout_store_unavailable", operation="reset")
            raise ServiceUnavailable("lockout state unavailable") from exc
        await self._mirror(account, LockoutStatus(locked=False, failed_attempts=0))

    async def clear_lockout(self, account: str) -> None:
        """Drop both lock and counter, e.g. after a completed password reset."""
        try:
            await self.store.delete(self._lock_key(account), self._failure_key(account))
        except StoreUnavailable as exc:
            raise ServiceUnavailable("lockout state unavailable") from exc
        await self._mirror(account, LockoutStatus(locked=False, failed_attempts=0))

    async def _mirror(self, account: str, status: LockoutStatus) -> None:
        if self.credentials is None:
            return
        locked_until: Optional[datetime] = None
        if status.locked:
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            locked_until = now + timedelta(seconds=status.retry_after)
        # A lock reached through the Lua script reports attempts as the
        # threshold; the counter itself has been reset.
        failed = 0 if status.locked else max(status.failed_attempts, 0)
        await self.credentials.update_lockout(
            account, failed_attempt_count=failed, locked_until=locked_until
        )


__all__ = ["RateLimiter"]
