from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from sessionguard.service.passwords import CredentialCheck, PasswordService
from sessionguard.service.tokens import TokenIssuer, TokenPair
from sessionguard.storage.errors import ConstraintViolation, StaleRecordError
from sessionguard.storage.models import (
    Account,
    RefreshSession,
    Role,
    is_locked,
    lock_minutes_remaining,
    normalize_identity,
    utcnow,
)

logger = get_logger(__name__)

# token_urlsafe output only; anything else cannot be one of ours
_REFRESH_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,512}$")


class CredentialStore(Protocol):
    def find_by_identity(self, email: str) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def find_by_refresh_token(self, token: str) -> Optional[Account]: ...

    def create(
        self,
        email: str,
        name: str,
        password_hash: str,
        role: Role = Role.USER,
    ) -> Account: ...

    def save(self, account: Account, *, expected_version: Optional[int] = None) -> Account: ...

    def list_accounts(self, limit: int = 100) -> List[Account]: ...


@dataclass
class ClientInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Registration, login, refresh rotation, lockout and session bookkeeping.

    Every change to an account goes through :meth:`_apply`, which re-reads
    the record and saves it with the version it was read at. Two requests
    racing on the same account therefore never both win; the loser retries
    against fresh state (and, for a refresh, finds its token gone).
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        passwords: Optional[PasswordService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self._clock = clock
        self.issuer = issuer or TokenIssuer(settings, clock=clock)
        self.passwords = passwords or PasswordService(settings, store, clock=clock)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # ----------------------------------------------------------------- helpers

    def _apply(self, account_id: str, mutate: Callable[[Account], Any]) -> Account:
        """Load, mutate and save one account with a version check.

        ``mutate`` may raise a ServiceError to abort without writing.
        """
        retries = self.settings.store_write_retries
        for attempt in range(1, retries + 1):
            account = self.store.find_by_id(account_id)
            if account is None:
                raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
            mutate(account)
            try:
                return self.store.save(account, expected_version=account.version)
            except StaleRecordError as exc:
                self.logger.info(
                    "account_write_conflict",
                    account_id=account_id,
                    attempt=attempt,
                    expected=exc.expected,
                    actual=exc.actual,
                )
        self.logger.warning("account_write_retries_exhausted", account_id=account_id)
        raise ConflictError(
            "Account was modified concurrently, please retry", error_code="CONFLICT"
        )

    def _locked_error(self, account: Account, now: datetime) -> LockedError:
        minutes = lock_minutes_remaining(account, now)
        return LockedError(
            f"Account is temporarily locked due to too many failed login attempts. "
            f"Try again in {minutes} minutes.",
            error_code="ACCOUNT_LOCKED",
            detail={"minutes_remaining": minutes},
        )

    def _register_failure(self, account_id: str, now: datetime) -> Account:
        max_attempts = self.settings.max_login_attempts

        def _bump(account: Account) -> None:
            if is_locked(account, now):
                return
            account.login_attempts += 1
            if account.login_attempts >= max_attempts:
                account.lock_until = now + timedelta(minutes=self.settings.lockout_minutes)

        updated = self._apply(account_id, _bump)
        if is_locked(updated, now):
            self.logger.warning(
                "account_locked",
                account_id=account_id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    def _new_session(
        self, account: Account, token: str, client: Optional[ClientInfo], now: datetime
    ) -> RefreshSession:
        client = client or ClientInfo()
        return RefreshSession.new(
            account.id,
            token,
            ttl=self.issuer.refresh_ttl,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            now=now,
        )

    # ----------------------------------------------------------- operations

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        identity = normalize_identity(email)
        if self.store.find_by_identity(identity):
            raise ConflictError("User already exists with this email", error_code="USER_EXISTS")
        password_hash = self.passwords.hash(password)
        try:
            created = self.store.create(identity, name.strip(), password_hash, role=Role.USER)
        except ConstraintViolation as exc:
            raise ConflictError(
                "User already exists with this email", error_code="USER_EXISTS"
            ) from exc

        now = self._now()
        tokens = self.issuer.issue(created.id)

        def _open_first_session(account: Account) -> None:
            account.add_session(
                self._new_session(account, tokens.refresh_token, client, now),
                limit=self.settings.max_refresh_sessions,
            )
            account.last_login = now

        account = self._apply(created.id, _open_first_session)
        self.logger.info("account_registered", account_id=account.id)
        return AuthResult(account=account, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        account = self.store.find_by_identity(email)
        if account is None:
            self.passwords.verify_dummy(password)
            self.logger.info("login_unknown_identity")
            raise AuthenticationError("Invalid credentials", error_code="INVALID_CREDENTIALS")
        if not account.is_active:
            self.logger.info("login_deactivated", account_id=account.id)
            raise AuthenticationError(
                "Account is deactivated. Please contact support.",
                error_code="ACCOUNT_DEACTIVATED",
            )
        now = self._now()
        if is_locked(account, now):
            self.logger.info("login_while_locked", account_id=account.id)
            raise self._locked_error(account, now)

        outcome = self.passwords.check(account, password, now)
        if outcome is CredentialCheck.LOCKED:
            latest = self.store.find_by_id(account.id) or account
            raise self._locked_error(latest, now)
        if outcome is CredentialCheck.MISMATCH:
            updated = self._register_failure(account.id, now)
            if is_locked(updated, now):
                raise self._locked_error(updated, now)
            remaining = max(0, self.settings.max_login_attempts - updated.login_attempts)
            self.logger.info(
                "login_failed", account_id=account.id, attempts=updated.login_attempts
            )
            raise AuthenticationError(
                f"Invalid credentials. {remaining} attempt(s) remaining before lockout.",
                error_code="INVALID_CREDENTIALS",
                detail={"attempts_remaining": remaining},
            )

        tokens = self.issuer.issue(account.id)
        rehashed = (
            self.passwords.hash(password)
            if self.passwords.needs_rehash(account.password_hash)
            else None
        )

        def _on_success(acct: Account) -> None:
            # A lock placed by a concurrent failure after our check still wins
            if is_locked(acct, now):
                raise self._locked_error(acct, now)
            acct.login_attempts = 0
            acct.lock_until = None
            if rehashed:
                acct.password_hash = rehashed
            acct.prune_expired_sessions(now)
            evicted = acct.add_session(
                self._new_session(acct, tokens.refresh_token, client, now),
                limit=self.settings.max_refresh_sessions,
            )
            if evicted:
                self.logger.info(
                    "refresh_sessions_evicted", account_id=acct.id, count=len(evicted)
                )
            acct.last_login = now

        saved = self._apply(account.id, _on_success)
        self.logger.info("login_succeeded", account_id=saved.id)
        return AuthResult(account=saved, tokens=tokens)

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        if not refresh_token:
            raise AuthenticationError(
                "Refresh token required", error_code="REFRESH_TOKEN_REQUIRED"
            )
        invalid = AuthenticationError(
            "Invalid refresh token", error_code="INVALID_REFRESH_TOKEN"
        )
        if not isinstance(refresh_token, str) or not _REFRESH_TOKEN_RE.match(refresh_token):
            raise invalid
        account = self.store.find_by_refresh_token(refresh_token)
        if account is None or not account.is_active:
            self.logger.info("refresh_rejected", reason="unknown_or_inactive")
            raise invalid
        now = self._now()
        session = account.find_session(refresh_token)
        if session is None:
            raise invalid
        if session.is_expired(now):
            self._apply(account.id, lambda acct: acct.remove_session_token(refresh_token))
            self.logger.info("refresh_rejected", reason="expired", account_id=account.id)
            raise invalid
        if is_locked(account, now):
            raise self._locked_error(account, now)

        tokens = self.issuer.issue(account.id)
        if client is None or not (client.user_agent or client.ip_address):
            client = ClientInfo(user_agent=session.user_agent, ip_address=session.ip_address)

        def _rotate(acct: Account) -> None:
            current = acct.find_session(refresh_token)
            if current is None or current.is_expired(now) or not acct.is_active:
                raise invalid
            if is_locked(acct, now):
                raise self._locked_error(acct, now)
            acct.remove_session_token(refresh_token)
            acct.prune_expired_sessions(now)
            acct.add_session(
                self._new_session(acct, tokens.refresh_token, client, now),
                limit=self.settings.max_refresh_sessions,
            )

        saved = self._apply(account.id, _rotate)
        self.logger.info("refresh_rotated", account_id=saved.id)
        return AuthResult(account=saved, tokens=tokens)

    async def logout(self, account_id: str, refresh_token: Optional[str] = None) -> None:
        if refresh_token:
            self._apply(account_id, lambda acct: acct.remove_session_token(refresh_token))
        self.logger.info("logout", account_id=account_id, had_token=bool(refresh_token))

    async def logout_all(self, account_id: str) -> None:
        def _clear(acct: Account) -> None:
            acct.refresh_sessions = []

        self._apply(account_id, _clear)
        self.logger.info("logout_all", account_id=account_id)

    async def get_profile(self, account_id: str) -> Account:
        account = self.store.find_by_id(account_id)
        if account is None:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return account

    async def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> Account:
        def _edit(acct: Account) -> None:
            if name is not None:
                acct.name = name.strip()
            for key, value in (profile or {}).items():
                if hasattr(acct.profile, key):
                    setattr(acct.profile, key, value)

        saved = self._apply(account_id, _edit)
        self.logger.info("profile_updated", account_id=account_id)
        return saved

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> Account:
        account = await self.get_profile(account_id)
        now = self._now()
        outcome = self.passwords.check(account, current_password, now)
        if outcome is CredentialCheck.LOCKED:
            latest = self.store.find_by_id(account_id) or account
            raise self._locked_error(latest, now)
        if outcome is CredentialCheck.MISMATCH:
            updated = self._register_failure(account_id, now)
            if is_locked(updated, now):
                raise self._locked_error(updated, now)
            raise ValidationError(
                "Current password is incorrect", error_code="INVALID_CURRENT_PASSWORD"
            )

        new_hash = self.passwords.hash(new_password)

        def _replace(acct: Account) -> None:
            acct.password_hash = new_hash
            acct.login_attempts = 0
            acct.lock_until = None
            acct.refresh_sessions = []

        saved = self._apply(account_id, _replace)
        self.logger.info("password_changed", account_id=account_id)
        return saved

    async def list_sessions(self, account_id: str) -> List[RefreshSession]:
        account = await self.get_profile(account_id)
        now = self._now()
        if any(s.is_expired(now) for s in account.refresh_sessions):
            account = self._apply(account_id, lambda acct: acct.prune_expired_sessions(now))
        return list(account.refresh_sessions)

    async def revoke_session(self, account_id: str, session_id: str) -> None:
        self._apply(account_id, lambda acct: acct.remove_session_id(session_id))
        self.logger.info("session_revoked", account_id=account_id, session_id=session_id)

    # ---------------------------------------------------------------- admin

    async def list_accounts(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)

    async def unlock_account(self, account_id: str) -> Account:
        def _unlock(acct: Account) -> None:
            acct.login_attempts = 0
            acct.lock_until = None

        saved = self._apply(account_id, _unlock)
        self.logger.info("account_unlocked", account_id=account_id)
        return saved

    async def set_active(self, account_id: str, active: bool) -> Account:
        def _toggle(acct: Account) -> None:
            acct.is_active = active
            if not active:
                acct.refresh_sessions = []

        saved = self._apply(account_id, _toggle)
        self.logger.info("account_status_changed", account_id=account_id, active=active)
        return saved

    async def set_role(self, account_id: str, role: Role) -> Account:
        """Grant a role; reachable only from operator tooling, never the public API."""

        def _grant(acct: Account) -> None:
            acct.role = Role(role)

        saved = self._apply(account_id, _grant)
        self.logger.info("account_role_changed", account_id=account_id, role=saved.role.value)
        return saved
