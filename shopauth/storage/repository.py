from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from shopauth.storage.models import CredentialRecord


class CredentialRepository(Protocol):
    """Access to the credential/profile store owned by the account service.

    Identifiers are passed already normalized (trimmed, lower-cased).
    ``create`` raises :class:`~shopauth.storage.errors.ConstraintViolation`
    when the identifier is taken. ``update_lockout`` is keyed by identifier
    and is a no-op for identifiers with no account.
    """

    async def get_by_identifier(self, identifier: str) -> Optional[CredentialRecord]: ...

    async def get_by_user_id(self, user_id: str) -> Optional[CredentialRecord]: ...

    async def create(self, identifier: str, password_hash: str) -> CredentialRecord: ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    async def update_lockout(
        self,
        identifier: str,
        *,
        failed_attempt_count: int,
        locked_until: Optional[datetime],
    ) -> None: ...


__all__ = ["CredentialRepository"]
