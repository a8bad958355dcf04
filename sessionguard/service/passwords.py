from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.models import Account, is_locked, utcnow

logger = get_logger(__name__)


class CredentialCheck(str, Enum):
    """Outcome of comparing a presented password with an account's hash."""

    LOCKED = "locked"
    MISMATCH = "mismatch"
    MATCH = "match"


class PasswordService:
    def __init__(
        self,
        settings: Settings,
        store,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        # Compared against when the identity is unknown so both paths cost the same
        self._dummy_hash = self._hasher.hash("sessionguard-timing-equaliser")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password or "")

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def check(self, account: Account, password: str, now: Optional[datetime] = None) -> CredentialCheck:
        """Compare ``password`` with the account's stored hash.

        The lock state is re-read from the store right before comparing; a
        lock set by a concurrent request wins over a correct password.
        """
        moment = now or self._clock()
        latest = self.store.find_by_id(account.id)
        if latest is None or is_locked(latest, moment):
            logger.info("credential_check_locked", account_id=account.id)
            return CredentialCheck.LOCKED
        if self.verify(latest.password_hash, password or ""):
            return CredentialCheck.MATCH
        return CredentialCheck.MISMATCH
