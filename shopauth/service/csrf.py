from __future__ import annotations

import hmac
import secrets
from typing import Iterable, Optional

from shopauth.logging import get_logger, log_security_event
from shopauth.service.errors import CsrfTokenMismatch, CsrfTokenMissing

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"


def _equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


class CsrfGuard:
    """Double-submit cookie check for state-changing requests.

    The token is minted once per session and stays stable for the session's
    lifetime, so concurrent tabs never race each other over a rotated value.
    Exempt paths are matched exactly; there is no prefix or pattern matching.
    """

    def __init__(self, exempt_paths: Iterable[str]):
        self.exempt_paths = frozenset(exempt_paths)

    @staticmethod
    def generate_token() -> str:
        return secrets.token_urlsafe(32)

    def requires_check(self, method: str, path: str) -> bool:
        return method.upper() not in SAFE_METHODS and path not in self.exempt_paths

    def validate(
        self,
        method: str,
        path: str,
        header_token: Optional[str],
        cookie_token: Optional[str],
        *,
        expected: Optional[str] = None,
    ) -> None:
        if not self.requires_check(method, path):
            return
        if not header_token or not cookie_token:
            log_security_event(
                logger,
                "csrf_rejected",
                reason="missing",
                method=method,
                path=path,
                header_present=bool(header_token),
            )
            raise CsrfTokenMissing()
        matches = _equal(header_token, cookie_token)
        if matches and expected is not None:
            matches = _equal(header_token, expected)
        if not matches:
            log_security_event(
                logger, "csrf_rejected", reason="mismatch", method=method, path=path
            )
            raise CsrfTokenMismatch()


__all__ = ["CSRF_COOKIE_NAME", "CSRF_HEADER_NAME", "CsrfGuard", "SAFE_METHODS"]
