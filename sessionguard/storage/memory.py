from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StaleRecordError
from sessionguard.storage.models import (
    Account,
    Role,
    deserialize_account,
    normalize_identity,
    serialize_account,
    utcnow,
)


class MemoryStore:
    """In-process credential store with optional JSON persistence.

    Every call holds ``_data_lock`` for its whole duration only. Reads hand
    out deep copies so a caller's edits stay private until ``save``.
    """

    def __init__(self, fs_root: Optional[str] = None, *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._identity_index: Dict[str, str] = {}
        self._token_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public call holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = persist and self.fs_root is not None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # ------------------------------------------------------------------ reads

    def find_by_identity(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._identity_index.get(normalize_identity(email))
            return self._copy(account_id)

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy(account_id)

    def find_by_refresh_token(self, token: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy(self._token_index.get(token))

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at, reverse=True)
            return [copy.deepcopy(a) for a in ordered[:limit]]

    def _copy(self, account_id: Optional[str]) -> Optional[Account]:
        if not account_id:
            return None
        stored = self.accounts.get(account_id)
        return copy.deepcopy(stored) if stored else None

    # ----------------------------------------------------------------- writes

    def create(
        self,
        email: str,
        name: str,
        password_hash: str,
        role: Role = Role.USER,
    ) -> Account:
        identity = normalize_identity(email)
        with self._data_lock:
            if identity in self._identity_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=identity,
                name=name,
                password_hash=password_hash,
                role=Role(role),
                created_at=now,
                updated_at=now,
                version=1,
            )
            self.accounts[account.id] = account
            self._identity_index[identity] = account.id
            self._persist_state()
            self.logger.info("account_created", account_id=account.id, role=account.role.value)
            return copy.deepcopy(account)

    def save(self, account: Account, *, expected_version: Optional[int] = None) -> Account:
        """Replace the stored record with ``account`` as one atomic step."""
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise StaleRecordError(account.id, expected_version or account.version, None)
            if expected_version is not None and current.version != expected_version:
                raise StaleRecordError(account.id, expected_version, current.version)

            identity = normalize_identity(account.email)
            owner = self._identity_index.get(identity)
            if owner and owner != account.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            for session in account.refresh_sessions:
                holder = self._token_index.get(session.token)
                if holder and holder != account.id:
                    raise ConstraintViolation(
                        "refresh token already issued", {"field": "refresh_token"}
                    )

            stored = copy.deepcopy(account)
            stored.email = identity
            stored.version = current.version + 1
            stored.updated_at = utcnow()

            if current.email != identity:
                self._identity_index.pop(current.email, None)
            self._identity_index[identity] = stored.id
            for session in current.refresh_sessions:
                self._token_index.pop(session.token, None)
            for session in stored.refresh_sessions:
                self._token_index[session.token] = stored.id

            self.accounts[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    # ------------------------------------------------------------ persistence

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"accounts": [serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".accounts_", suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        accounts = [deserialize_account(raw) for raw in data.get("accounts", [])]
        self.accounts = {a.id: a for a in accounts}
        self._identity_index = {a.email: a.id for a in accounts}
        self._token_index = {
            s.token: a.id for a in accounts for s in a.refresh_sessions
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
