from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from shopauth.config import Settings
from shopauth.logging import get_logger
from shopauth.service.errors import ServiceUnavailable
from shopauth.storage.common import CasResult, Clock, SharedStore, system_clock
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.models import SessionRecord

logger = get_logger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionStore:
    """Server-side sessions kept in the shared store.

    A session is written once, atomically, together with its first refresh
    head and CSRF token, and indexed under its user for bulk revocation.
    Revoked sessions are kept (flagged) until their TTL lapses so a replayed
    refresh token can still be recognised as belonging to a dead session.
    """

    def __init__(self, store: SharedStore, settings: Settings, *, clock: Clock = system_clock):
        self.store = store
        self.settings = settings
        self._clock = clock

    @staticmethod
    def _key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def create(
        self,
        user_id: str,
        fingerprint: str,
        *,
        session_id: str,
        refresh_token_hash: str,
        csrf_token: str,
    ) -> SessionRecord:
        now = self._now()
        ttl = self.settings.refresh_token_ttl
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            device_fingerprint=fingerprint,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            csrf_token=csrf_token,
            refresh_token_hash=refresh_token_hash,
        )
        try:
            created = await self.store.create_hash(
                self._key(session_id), record.to_hash(), ttl, index_key=self._index_key(user_id)
            )
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc
        if not created:
            # uuid4 collision or a replayed id; never overwrite a live session.
            raise ServiceUnavailable("session id collision")
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        try:
            data = await self.store.get_hash(self._key(session_id))
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc
        if not data:
            return None
        return SessionRecord.from_hash(data)

    async def get_active(self, session_id: str) -> Optional[SessionRecord]:
        record = await self.get(session_id)
        if record is None or not record.is_active(self._now()):
            return None
        return record

    async def revoke(self, session_id: str, *, reason: str = "logout") -> bool:
        """Mark a session revoked. Revoking twice, or revoking nothing, is a no-op."""
        try:
            data = await self.store.get_hash(self._key(session_id))
            if not data:
                return False
            updated = await self.store.update_hash(self._key(session_id), {"revoked": "1"})
            await self.store.set_remove(self._index_key(data["user_id"]), session_id)
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc
        if updated and data.get("revoked") != "1":
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return updated

    async def revoke_all(
        self, user_id: str, *, except_session_id: Optional[str] = None, reason: str = "logout_all"
    ) -> int:
        try:
            members = await self.store.set_members(self._index_key(user_id))
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc
        revoked = 0
        for session_id in members:
            if session_id == except_session_id:
                continue
            if await self.revoke(session_id, reason=reason):
                revoked += 1
        logger.info("sessions_revoked_for_user", user_id=user_id, count=revoked, reason=reason)
        return revoked

    async def list_active(self, user_id: str) -> List[SessionRecord]:
        try:
            members = await self.store.set_members(self._index_key(user_id))
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc
        now = self._now()
        active: List[SessionRecord] = []
        for session_id in sorted(members):
            record = await self.get(session_id)
            if record is None:
                # Expired out of the store; drop the dangling index entry.
                try:
                    await self.store.set_remove(self._index_key(user_id), session_id)
                except StoreUnavailable as exc:
                    raise ServiceUnavailable("session store unavailable") from exc
                continue
            if record.is_active(now):
                active.append(record)
        active.sort(key=lambda rec: rec.created_at)
        return active

    async def advance_refresh_head(
        self, session_id: str, expected_hash: str, new_hash: str
    ) -> CasResult:
        """Swap the refresh head iff it still equals ``expected_hash`` and the
        session is not revoked; also slides the session expiry forward."""
        ttl = self.settings.refresh_token_ttl
        expires_at = self._now() + timedelta(seconds=ttl)
        try:
            return await self.store.compare_and_swap(
                self._key(session_id),
                {"refresh_token_hash": expected_hash, "revoked": "0"},
                {"refresh_token_hash": new_hash, "expires_at": repr(expires_at.timestamp())},
                ttl_seconds=ttl,
            )
        except StoreUnavailable as exc:
            raise ServiceUnavailable("session store unavailable") from exc


__all__ = ["SessionStore", "new_session_id"]
