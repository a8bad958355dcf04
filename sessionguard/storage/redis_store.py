from __future__ import annotations

import json
import uuid
from typing import List, Optional

from redis import Redis
from redis.exceptions import RedisError, WatchError

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


class RedisStore:
    """Credential store keeping one JSON document per account in Redis.

    Keys:
        ``{ns}:account:{id}``       the account document
        ``{ns}:identity:{email}``   identity index, value is the account id
        ``{ns}:refresh:{token}``    refresh token index, value is the account id

    ``save`` runs as a WATCH/MULTI transaction so the version check and the
    index rewrite commit together or not at all.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "sg",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.logger = get_logger(__name__)
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    def _account_key(self, account_id: str) -> str:
        return f"{self.namespace}:account:{account_id}"

    def _identity_key(self, email: str) -> str:
        return f"{self.namespace}:identity:{normalize_identity(email)}"

    def _refresh_key(self, token: str) -> str:
        return f"{self.namespace}:refresh:{token}"

    @staticmethod
    def _ttl_seconds(account: Account, token: str) -> Optional[int]:
        session = account.find_session(token)
        if session is None:
            return None
        return max(1, int((session.expires_at - utcnow()).total_seconds()))

    # ------------------------------------------------------------------ reads

    def find_by_id(self, account_id: str) -> Optional[Account]:
        if not account_id:
            return None
        raw = self.client.get(self._account_key(account_id))
        return deserialize_account(json.loads(raw)) if raw else None

    def find_by_identity(self, email: str) -> Optional[Account]:
        account_id = self.client.get(self._identity_key(email))
        return self.find_by_id(account_id) if account_id else None

    def find_by_refresh_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        account_id = self.client.get(self._refresh_key(token))
        return self.find_by_id(account_id) if account_id else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        accounts = []
        for key in self.client.scan_iter(match=f"{self.namespace}:account:*"):
            raw = self.client.get(key)
            if raw:
                accounts.append(deserialize_account(json.loads(raw)))
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts[:limit]

    # ----------------------------------------------------------------- writes

    def create(
        self,
        email: str,
        name: str,
        password_hash: str,
        role: Role = Role.USER,
    ) -> Account:
        identity = normalize_identity(email)
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
        # The identity key is claimed first; losing the race means the email exists
        if not self.client.set(self._identity_key(identity), account.id, nx=True):
            raise ConstraintViolation("email already exists", {"field": "email"})
        try:
            self.client.set(self._account_key(account.id), json.dumps(serialize_account(account)))
        except RedisError as exc:
            # Release the claim so the email is not left reserved by a missing document
            self.logger.error("account_create_failed", account_id=account.id, error=str(exc))
            self.client.delete(self._identity_key(identity))
            raise
        self.logger.info("account_created", account_id=account.id, role=account.role.value)
        return account

    def save(self, account: Account, *, expected_version: Optional[int] = None) -> Account:
        key = self._account_key(account.id)
        identity = normalize_identity(account.email)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key, self._identity_key(identity))
                raw = pipe.get(key)
                if raw is None:
                    raise StaleRecordError(
                        account.id, expected_version or account.version, None
                    )
                current = deserialize_account(json.loads(raw))
                if expected_version is not None and current.version != expected_version:
                    raise StaleRecordError(account.id, expected_version, current.version)

                owner = pipe.get(self._identity_key(identity))
                if owner and owner != account.id:
                    raise ConstraintViolation("email already exists", {"field": "email"})

                old_tokens = {s.token for s in current.refresh_sessions}
                new_tokens = {s.token for s in account.refresh_sessions}
                added = new_tokens - old_tokens
                if added:
                    pipe.watch(*[self._refresh_key(t) for t in added])
                    for token in added:
                        holder = pipe.get(self._refresh_key(token))
                        if holder and holder != account.id:
                            raise ConstraintViolation(
                                "refresh token already issued", {"field": "refresh_token"}
                            )

                stored = deserialize_account(serialize_account(account))
                stored.email = identity
                stored.version = current.version + 1
                stored.updated_at = utcnow()

                pipe.multi()
                pipe.set(key, json.dumps(serialize_account(stored)))
                if current.email != identity:
                    pipe.delete(self._identity_key(current.email))
                    pipe.set(self._identity_key(identity), stored.id)
                for token in old_tokens - new_tokens:
                    pipe.delete(self._refresh_key(token))
                for token in added:
                    pipe.set(
                        self._refresh_key(token),
                        stored.id,
                        ex=self._ttl_seconds(stored, token),
                    )
                pipe.execute()
            except WatchError as exc:
                raise StaleRecordError(
                    account.id, expected_version or account.version, None
                ) from exc
        return stored

    def flush_namespace(self) -> int:
        """Delete every key under this store's namespace; used by tests."""
        keys = list(self.client.scan_iter(match=f"{self.namespace}:*"))
        if keys:
            self.client.delete(*keys)
        return len(keys)
