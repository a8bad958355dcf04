"""Unit tests for the auth service.

Tests for:
- Registration and duplicate identities
- Login, failed-attempt counting and lockout
- Refresh rotation, replay and the concurrent rotation race
- Session bounds, logout, revocation
- Password change and admin actions
"""

import asyncio
from datetime import timedelta

import pytest

from sessionguard.service.auth import AuthService, ClientInfo
from sessionguard.service.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from sessionguard.service.passwords import CredentialCheck
from sessionguard.storage.errors import StaleRecordError
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import AuthState, Role, auth_state

PASSWORD = "Secure@Pass123"
EMAIL = "alice@example.com"


class InterleavingStore(MemoryStore):
    """Runs a one-shot hook right before the next save, simulating a rival writer."""

    def __init__(self):
        super().__init__(persist=False)
        self.before_save = None

    def save(self, account, *, expected_version=None):
        hook, self.before_save = self.before_save, None
        if hook:
            hook()
        return super().save(account, expected_version=expected_version)


class AlwaysStaleStore(MemoryStore):
    def save(self, account, *, expected_version=None):
        if expected_version is not None:
            raise StaleRecordError(account.id, expected_version, expected_version + 1)
        return super().save(account)


@pytest.fixture
def registered(auth_service):
    return asyncio.run(auth_service.register(EMAIL, PASSWORD, "Alice"))


async def _fail_login(auth_service, times):
    errors = []
    for _ in range(times):
        try:
            await auth_service.login(EMAIL, "Wrong@Pass123")
        except (AuthenticationError, LockedError) as exc:
            errors.append(exc)
    return errors


class TestRegister:
    async def test_register_issues_tokens_and_first_session(self, auth_service, clock):
        result = await auth_service.register(
            EMAIL, PASSWORD, "Alice", client=ClientInfo("pytest", "127.0.0.1")
        )

        assert result.account.role is Role.USER
        assert result.account.last_login == clock.now
        assert len(result.account.refresh_sessions) == 1
        session = result.account.refresh_sessions[0]
        assert session.token == result.tokens.refresh_token
        assert session.user_agent == "pytest"
        assert session.ip_address == "127.0.0.1"
        assert auth_service.issuer.verify_access(result.tokens.access_token) == result.account.id

    async def test_password_is_hashed(self, auth_service):
        result = await auth_service.register(EMAIL, PASSWORD, "Alice")
        assert result.account.password_hash.startswith("$argon2id$")
        assert PASSWORD not in result.account.password_hash

    async def test_duplicate_identity_is_case_insensitive(self, auth_service):
        await auth_service.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register("ALICE@example.com", PASSWORD, "Other")
        assert exc_info.value.error_code == "USER_EXISTS"
        assert exc_info.value.status_code == 409


class TestLogin:
    async def test_login_success(self, auth_service, registered):
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.account.id == registered.account.id
        assert len(result.account.refresh_sessions) == 2

    async def test_unknown_identity(self, auth_service):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login("ghost@example.com", PASSWORD)
        assert exc_info.value.error_code == "INVALID_CREDENTIALS"

    async def test_deactivated_account(self, auth_service, registered):
        await auth_service.set_active(registered.account.id, False)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login(EMAIL, PASSWORD)
        assert exc_info.value.error_code == "ACCOUNT_DEACTIVATED"

    async def test_failures_count_down_then_fifth_locks(self, auth_service, registered):
        errors = await _fail_login(auth_service, 5)

        assert [e.error_code for e in errors[:4]] == ["INVALID_CREDENTIALS"] * 4
        assert [e.detail["attempts_remaining"] for e in errors[:4]] == [4, 3, 2, 1]
        assert isinstance(errors[4], LockedError)
        assert errors[4].status_code == 423
        assert errors[4].detail["minutes_remaining"] == 30

    async def test_locked_account_rejects_correct_password(self, auth_service, registered):
        await _fail_login(auth_service, 5)
        with pytest.raises(LockedError):
            await auth_service.login(EMAIL, PASSWORD)

    async def test_locked_attempts_do_not_grow_counter(self, auth_service, registered):
        await _fail_login(auth_service, 7)
        account = auth_service.store.find_by_id(registered.account.id)
        assert account.login_attempts == 5

    async def test_success_after_lock_elapses_resets(self, auth_service, registered, clock):
        await _fail_login(auth_service, 5)
        clock.advance(minutes=31)

        result = await auth_service.login(EMAIL, PASSWORD)

        assert result.account.login_attempts == 0
        assert result.account.lock_until is None
        assert auth_state(result.account, clock.now) is AuthState.OPEN

    async def test_failure_after_lock_elapses_relocks(self, auth_service, registered, clock):
        await _fail_login(auth_service, 5)
        clock.advance(minutes=31)

        errors = await _fail_login(auth_service, 1)

        assert isinstance(errors[0], LockedError)

    async def test_success_resets_partial_counter(self, auth_service, registered):
        await _fail_login(auth_service, 3)
        result = await auth_service.login(EMAIL, PASSWORD)
        assert result.account.login_attempts == 0

    async def test_session_list_bounded_to_five(self, auth_service, registered):
        first_token = registered.tokens.refresh_token
        for _ in range(5):
            result = await auth_service.login(EMAIL, PASSWORD)

        assert len(result.account.refresh_sessions) == 5
        assert result.account.find_session(first_token) is None
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(first_token)
        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"


class TestCredentialCheck:
    def test_lock_set_after_read_wins(self, auth_service, registered, clock):
        stale = auth_service.store.find_by_id(registered.account.id)
        # Another request locks the account after our read
        fresh = auth_service.store.find_by_id(registered.account.id)
        fresh.login_attempts = 5
        fresh.lock_until = clock.now + timedelta(minutes=30)
        auth_service.store.save(fresh)

        assert auth_service.passwords.check(stale, PASSWORD, clock.now) is CredentialCheck.LOCKED

    def test_match_and_mismatch(self, auth_service, registered, clock):
        account = registered.account
        assert auth_service.passwords.check(account, PASSWORD, clock.now) is CredentialCheck.MATCH
        assert auth_service.passwords.check(account, "nope", clock.now) is CredentialCheck.MISMATCH


class TestRefresh:
    async def test_rotation_consumes_presented_token(self, auth_service, registered):
        old = registered.tokens.refresh_token

        rotated = await auth_service.refresh(old)

        assert rotated.tokens.refresh_token != old
        assert rotated.account.find_session(old) is None
        assert rotated.account.find_session(rotated.tokens.refresh_token) is not None
        assert len(rotated.account.refresh_sessions) == 1

    async def test_replayed_token_is_rejected(self, auth_service, registered):
        old = registered.tokens.refresh_token
        await auth_service.refresh(old)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(old)
        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"

    async def test_rotation_keeps_device_metadata(self, auth_service):
        result = await auth_service.register(
            EMAIL, PASSWORD, "Alice", client=ClientInfo("phone", "10.0.0.2")
        )
        rotated = await auth_service.refresh(result.tokens.refresh_token)
        session = rotated.account.refresh_sessions[0]
        assert (session.user_agent, session.ip_address) == ("phone", "10.0.0.2")

    @pytest.mark.parametrize("token", [None, ""])
    async def test_missing_token(self, auth_service, token):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(token)
        assert exc_info.value.error_code == "REFRESH_TOKEN_REQUIRED"

    @pytest.mark.parametrize("token", ["short", "not a token at all!", "x" * 600])
    async def test_unacceptable_token(self, auth_service, token):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(token)
        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"

    async def test_expired_session_is_pruned(self, auth_service, registered, clock):
        token = registered.tokens.refresh_token
        clock.advance(days=7, seconds=1)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(token)

        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"
        assert auth_service.store.find_by_id(registered.account.id).refresh_sessions == []

    async def test_inactive_owner_rejected(self, auth_service, registered):
        account = auth_service.store.find_by_id(registered.account.id)
        account.is_active = False
        auth_service.store.save(account)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(registered.tokens.refresh_token)
        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"

    async def test_locked_owner_rejected(self, auth_service, registered):
        await _fail_login(auth_service, 5)
        with pytest.raises(LockedError):
            await auth_service.refresh(registered.tokens.refresh_token)

    async def test_concurrent_rotation_has_one_winner(self, settings, clock):
        store = InterleavingStore()
        service = AuthService(store, settings, clock=clock)
        registered = await service.register(EMAIL, PASSWORD, "Alice")
        token = registered.tokens.refresh_token

        def rival_rotation():
            rival = store.find_by_id(registered.account.id)
            rival.remove_session_token(token)
            store.save(rival, expected_version=rival.version)

        store.before_save = rival_rotation
        with pytest.raises(AuthenticationError) as exc_info:
            await service.refresh(token)

        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"
        assert store.find_by_id(registered.account.id).refresh_sessions == []


class TestLogout:
    async def test_logout_removes_only_that_session(self, auth_service, registered):
        second = await auth_service.login(EMAIL, PASSWORD)

        await auth_service.logout(registered.account.id, registered.tokens.refresh_token)

        sessions = await auth_service.list_sessions(registered.account.id)
        assert [s.token for s in sessions] == [second.tokens.refresh_token]

    async def test_logout_is_idempotent(self, auth_service, registered):
        token = registered.tokens.refresh_token
        await auth_service.logout(registered.account.id, token)
        await auth_service.logout(registered.account.id, token)
        await auth_service.logout(registered.account.id)
        assert await auth_service.list_sessions(registered.account.id) == []

    async def test_logout_all_clears_every_session(self, auth_service, registered):
        await auth_service.login(EMAIL, PASSWORD)
        await auth_service.logout_all(registered.account.id)
        await auth_service.logout_all(registered.account.id)
        assert await auth_service.list_sessions(registered.account.id) == []

    async def test_revoke_session_by_id(self, auth_service, registered):
        session_id = registered.account.refresh_sessions[0].id
        await auth_service.revoke_session(registered.account.id, session_id)
        await auth_service.revoke_session(registered.account.id, session_id)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(registered.tokens.refresh_token)

    async def test_list_sessions_prunes_expired(self, auth_service, registered, clock):
        clock.advance(days=8)
        assert await auth_service.list_sessions(registered.account.id) == []
        assert auth_service.store.find_by_id(registered.account.id).refresh_sessions == []


class TestProfileAndPassword:
    async def test_update_profile(self, auth_service, registered):
        updated = await auth_service.update_profile(
            registered.account.id, name="Alice Smith", profile={"bio": "hello"}
        )
        assert updated.name == "Alice Smith"
        assert updated.profile.bio == "hello"
        assert updated.profile.avatar is None

    async def test_change_password_revokes_sessions(self, auth_service, registered):
        await auth_service.change_password(registered.account.id, PASSWORD, "Newer@Pass456")

        assert await auth_service.list_sessions(registered.account.id) == []
        with pytest.raises(AuthenticationError):
            await auth_service.login(EMAIL, PASSWORD)
        result = await auth_service.login(EMAIL, "Newer@Pass456")
        assert result.account.id == registered.account.id

    async def test_wrong_current_password_counts_toward_lockout(self, auth_service, registered):
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.change_password(registered.account.id, "bad", "Newer@Pass456")

        assert exc_info.value.error_code == "INVALID_CURRENT_PASSWORD"
        assert exc_info.value.status_code == 400
        assert auth_service.store.find_by_id(registered.account.id).login_attempts == 1

    async def test_change_password_on_locked_account(self, auth_service, registered):
        await _fail_login(auth_service, 5)
        with pytest.raises(LockedError):
            await auth_service.change_password(registered.account.id, PASSWORD, "Newer@Pass456")

    async def test_unknown_account(self, auth_service):
        with pytest.raises(NotFoundError) as exc_info:
            await auth_service.get_profile("missing")
        assert exc_info.value.error_code == "USER_NOT_FOUND"


class TestAdminActions:
    async def test_unlock_clears_lock_and_counter(self, auth_service, registered):
        await _fail_login(auth_service, 5)
        unlocked = await auth_service.unlock_account(registered.account.id)
        assert unlocked.login_attempts == 0
        assert unlocked.lock_until is None
        await auth_service.login(EMAIL, PASSWORD)

    async def test_deactivation_clears_sessions(self, auth_service, registered):
        updated = await auth_service.set_active(registered.account.id, False)
        assert updated.refresh_sessions == []
        assert not updated.is_active

    async def test_set_role(self, auth_service, registered):
        updated = await auth_service.set_role(registered.account.id, Role.ADMIN)
        assert updated.role is Role.ADMIN

    async def test_list_accounts(self, auth_service, registered):
        accounts = await auth_service.list_accounts()
        assert [a.id for a in accounts] == [registered.account.id]


class TestWriteRetries:
    async def test_exhausted_retries_raise_conflict(self, settings, clock):
        store = AlwaysStaleStore(persist=False)
        service = AuthService(store, settings, clock=clock)
        account = store.create(EMAIL, "Alice", service.passwords.hash(PASSWORD))

        with pytest.raises(ConflictError) as exc_info:
            await service.logout_all(account.id)
        assert exc_info.value.error_code == "CONFLICT"
