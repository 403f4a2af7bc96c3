from __future__ import annotations

from typing import Protocol

from shopauth.logging import get_logger, identifier_digest

logger = get_logger(__name__)


class PasswordResetNotifier(Protocol):
    """Delivers a password-reset token to the account owner (e-mail, SMS...)."""

    async def send_reset(self, identifier: str, reset_token: str, expires_in: int) -> None: ...


class LoggingResetNotifier:
    """Development notifier: records that a reset was issued without the token."""

    async def send_reset(self, identifier: str, reset_token: str, expires_in: int) -> None:
        logger.info(
            "password_reset_notification_dev_mode",
            account=identifier_digest(identifier),
            expires_in=expires_in,
        )


__all__ = ["LoggingResetNotifier", "PasswordResetNotifier"]
