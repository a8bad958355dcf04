from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LockedError,
)
from sessionguard.service.tokens import TokenIssuer
from sessionguard.storage.models import Account, Role, is_locked, lock_minutes_remaining, utcnow

logger = get_logger(__name__)


class AuthGuard:
    """Resolves a bearer header to an active, unlocked account."""

    def __init__(
        self,
        store,
        issuer: TokenIssuer,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self._clock = clock

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, header: Optional[str]) -> Account:
        token = self.extract_bearer(header)
        if not token:
            raise AuthenticationError("Access token required", error_code="NO_TOKEN")
        account_id = self.issuer.verify_access(token)
        account = self.store.find_by_id(account_id)
        if account is None:
            raise AuthenticationError("User not found", error_code="USER_NOT_FOUND")
        if not account.is_active:
            raise AuthenticationError(
                "Account is deactivated", error_code="ACCOUNT_DEACTIVATED"
            )
        now = self._clock()
        if is_locked(account, now):
            minutes = lock_minutes_remaining(account, now)
            raise LockedError(
                "Account is temporarily locked",
                error_code="ACCOUNT_LOCKED",
                detail={"minutes_remaining": minutes},
            )
        return account

    def authenticate_optional(self, header: Optional[str]) -> Optional[Account]:
        """Like :meth:`authenticate` but yields None instead of an auth error."""
        try:
            return self.authenticate(header)
        except (AuthenticationError, LockedError) as exc:
            if header:
                logger.debug("optional_auth_ignored", error_code=exc.error_code)
            return None

    @staticmethod
    def authorize(
        account: Optional[Account], roles: Iterable[Union[Role, str]]
    ) -> Account:
        if account is None:
            raise AuthenticationError("Authentication required", error_code="AUTH_REQUIRED")
        allowed = {Role(r) for r in roles}
        if account.role not in allowed:
            logger.info(
                "authorization_denied",
                account_id=account.id,
                role=account.role.value,
                required=sorted(r.value for r in allowed),
            )
            raise ForbiddenError(
                "Insufficient permissions", error_code="INSUFFICIENT_PERMISSIONS"
            )
        return account
