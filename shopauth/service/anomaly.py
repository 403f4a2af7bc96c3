from __future__ import annotations

import hashlib

from shopauth.config import Settings
from shopauth.logging import get_logger
from shopauth.storage.common import SharedStore
from shopauth.storage.errors import StoreUnavailable
from shopauth.storage.models import DeviceStatus

logger = get_logger(__name__)


class DeviceAnomalyDetector:
    """Classifies a login's device fingerprint against the user's recent history.

    The fingerprint is an opaque client-supplied value; only its digest is
    kept. Classification never blocks a login, so store failures fail open:
    an unreadable history reports ``NEW_DEVICE``.
    """

    def __init__(self, store: SharedStore, settings: Settings):
        self.store = store
        self.history_size = settings.fingerprint_history_size
        self.history_ttl = settings.refresh_token_ttl * 4

    @staticmethod
    def _key(user_id: str) -> str:
        return f"device:history:{user_id}"

    @staticmethod
    def _digest(fingerprint: str) -> str:
        return hashlib.sha256(fingerprint.encode()).hexdigest()

    async def check(self, user_id: str, fingerprint: str) -> DeviceStatus:
        if not fingerprint:
            return DeviceStatus.NEW_DEVICE
        try:
            history = await self.store.list_range(self._key(user_id), self.history_size)
        except StoreUnavailable:
            logger.warning("device_history_unavailable", user_id=user_id, operation="check")
            return DeviceStatus.NEW_DEVICE
        if self._digest(fingerprint) in history:
            return DeviceStatus.KNOWN
        logger.info("new_device_detected", user_id=user_id, known_devices=len(history))
        return DeviceStatus.NEW_DEVICE

    async def remember(self, user_id: str, fingerprint: str) -> None:
        if not fingerprint:
            return
        try:
            await self.store.push_bounded(
                self._key(user_id), self._digest(fingerprint), self.history_size, self.history_ttl
            )
        except StoreUnavailable:
            logger.warning("device_history_unavailable", user_id=user_id, operation="remember")


__all__ = ["DeviceAnomalyDetector"]
