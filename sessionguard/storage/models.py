from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_identity(email: str) -> str:
    """Identity keys are compared case-insensitively."""
    return (email or "").strip().lower()


class Role(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


class AuthState(str, Enum):
    """Per-account position in the failed-attempt state machine."""

    OPEN = "open"
    WARNING = "warning"
    LOCKED = "locked"


@dataclass
class AccountProfile:
    avatar: Optional[str] = None
    bio: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"avatar": self.avatar, "bio": self.bio, "phone": self.phone}


@dataclass
class RefreshSession:
    id: str
    token: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token: str,
        *,
        ttl: timedelta,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshSession":
        created = now or utcnow()
        return cls(
            id=uuid.uuid4().hex,
            token=token,
            account_id=account_id,
            created_at=created,
            expires_at=created + ttl,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userAgent": self.user_agent,
            "ipAddress": self.ip_address,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass
class Account:
    id: str
    email: str
    name: str
    password_hash: str
    role: Role = Role.USER
    is_active: bool = True
    is_verified: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_sessions: List[RefreshSession] = field(default_factory=list)
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    profile: AccountProfile = field(default_factory=AccountProfile)
    version: int = 0

    def find_session(self, token: str) -> Optional[RefreshSession]:
        return next((s for s in self.refresh_sessions if s.token == token), None)

    def add_session(self, session: RefreshSession, *, limit: int) -> List[RefreshSession]:
        """Append a session, evicting the oldest beyond ``limit``.

        Returns the evicted sessions.
        """
        self.refresh_sessions.append(session)
        overflow = len(self.refresh_sessions) - limit
        if overflow <= 0:
            return []
        evicted = self.refresh_sessions[:overflow]
        self.refresh_sessions = self.refresh_sessions[overflow:]
        return evicted

    def remove_session_token(self, token: str) -> bool:
        before = len(self.refresh_sessions)
        self.refresh_sessions = [s for s in self.refresh_sessions if s.token != token]
        return len(self.refresh_sessions) != before

    def remove_session_id(self, session_id: str) -> bool:
        before = len(self.refresh_sessions)
        self.refresh_sessions = [s for s in self.refresh_sessions if s.id != session_id]
        return len(self.refresh_sessions) != before

    def prune_expired_sessions(self, now: Optional[datetime] = None) -> int:
        moment = now or utcnow()
        before = len(self.refresh_sessions)
        self.refresh_sessions = [s for s in self.refresh_sessions if not s.is_expired(moment)]
        return before - len(self.refresh_sessions)

    def to_public(self) -> Dict[str, Any]:
        """External view; never includes the hash, sessions or lockout fields."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "isVerified": self.is_verified,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
            "profile": self.profile.to_dict(),
            "createdAt": self.created_at.isoformat(),
        }


# Lockout state is always derived from the stored counter and lock time.


def is_locked(account: Account, now: Optional[datetime] = None) -> bool:
    return account.lock_until is not None and account.lock_until > (now or utcnow())


def lock_minutes_remaining(account: Account, now: Optional[datetime] = None) -> int:
    if not is_locked(account, now):
        return 0
    seconds = (account.lock_until - (now or utcnow())).total_seconds()
    return max(1, math.ceil(seconds / 60))


def auth_state(account: Account, now: Optional[datetime] = None) -> AuthState:
    if is_locked(account, now):
        return AuthState.LOCKED
    if account.login_attempts > 0:
        return AuthState.WARNING
    return AuthState.OPEN


def _dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize_account(account: Account) -> Dict[str, Any]:
    """Full persisted form, including private fields."""
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "password_hash": account.password_hash,
        "role": account.role.value,
        "is_active": account.is_active,
        "is_verified": account.is_verified,
        "login_attempts": account.login_attempts,
        "lock_until": account.lock_until.isoformat() if account.lock_until else None,
        "refresh_sessions": [
            {
                "id": s.id,
                "token": s.token,
                "account_id": s.account_id,
                "created_at": s.created_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
                "user_agent": s.user_agent,
                "ip_address": s.ip_address,
            }
            for s in account.refresh_sessions
        ],
        "last_login": account.last_login.isoformat() if account.last_login else None,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat(),
        "profile": account.profile.to_dict(),
        "version": account.version,
    }


def deserialize_account(data: Dict[str, Any]) -> Account:
    return Account(
        id=data["id"],
        email=data["email"],
        name=data.get("name", ""),
        password_hash=data["password_hash"],
        role=Role(data.get("role", Role.USER.value)),
        is_active=data.get("is_active", True),
        is_verified=data.get("is_verified", False),
        login_attempts=int(data.get("login_attempts", 0)),
        lock_until=_dt(data.get("lock_until")),
        refresh_sessions=[
            RefreshSession(
                id=s["id"],
                token=s["token"],
                account_id=s.get("account_id", data["id"]),
                created_at=_dt(s["created_at"]),
                expires_at=_dt(s["expires_at"]),
                user_agent=s.get("user_agent"),
                ip_address=s.get("ip_address"),
            )
            for s in data.get("refresh_sessions", [])
        ],
        last_login=_dt(data.get("last_login")),
        created_at=_dt(data.get("created_at")) or utcnow(),
        updated_at=_dt(data.get("updated_at")) or utcnow(),
        profile=AccountProfile(**(data.get("profile") or {})),
        version=int(data.get("version", 0)),
    )
