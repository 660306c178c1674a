"""
Tests for SessionKey and SessionKeyManager.

Covers:
- NO_MASTER_KEY / LOCKED / UNLOCKED transitions
- Failed-attempt counting and lock-out
- Key wiping on lock
- Master key change
- PostgresProfileStore SQL calls
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from monokey.exceptions import (
    ConfigurationError,
    NotUnlockedError,
    SessionStateError,
    TooManyAttempts,
    VerificationFailure,
)
from monokey.vault.config import VaultConfig
from monokey.vault.crypto import hash_secret
from monokey.vault.session import (
    PostgresProfileStore,
    SessionKey,
    SessionKeyManager,
    SessionState,
)

from conftest import ACCOUNT_ID, MASTER_KEY


class TestSessionKey:
    """In-memory key holder."""

    def test_secret_bytes(self):
        key = SessionKey(ACCOUNT_ID, MASTER_KEY)
        assert key.secret == MASTER_KEY.encode()
        assert key.is_live

    def test_repr_hides_secret(self):
        key = SessionKey(ACCOUNT_ID, MASTER_KEY)
        assert MASTER_KEY not in repr(key)

    def test_wipe(self):
        key = SessionKey(ACCOUNT_ID, MASTER_KEY)
        key.wipe()
        assert not key.is_live
        with pytest.raises(NotUnlockedError):
            key.secret
        key.wipe()


class TestInitialState:
    """State settled from the stored hash."""

    @pytest.mark.asyncio
    async def test_no_master_key(self, manager):
        assert await manager.refresh() is SessionState.NO_MASTER_KEY

    @pytest.mark.asyncio
    async def test_locked(self, locked_manager):
        assert await locked_manager.refresh() is SessionState.LOCKED
        with pytest.raises(NotUnlockedError):
            locked_manager.session_key


class TestSetUp:
    """First-time master key creation."""

    @pytest.mark.asyncio
    async def test_set_up_unlocks_and_persists_hash(self, manager, profiles):
        await manager.refresh()
        key = await manager.set_up(MASTER_KEY)
        assert manager.state is SessionState.UNLOCKED
        assert manager.session_key is key
        assert profiles.hashes[ACCOUNT_ID] == hash_secret(MASTER_KEY)
        assert MASTER_KEY not in profiles.hashes[ACCOUNT_ID]

    @pytest.mark.asyncio
    async def test_short_key_rejected(self, manager, profiles):
        await manager.refresh()
        with pytest.raises(ConfigurationError):
            await manager.set_up("short")
        assert manager.state is SessionState.NO_MASTER_KEY
        assert profiles.writes == 0

    @pytest.mark.asyncio
    async def test_set_up_twice_rejected(self, locked_manager, locked_profiles):
        await locked_manager.refresh()
        with pytest.raises(SessionStateError):
            await locked_manager.set_up("another-master-key")
        assert locked_profiles.writes == 0


class TestUnlock:
    """Verification against the stored hash."""

    @pytest.mark.asyncio
    async def test_unlock(self, locked_manager):
        await locked_manager.refresh()
        key = locked_manager.unlock(MASTER_KEY)
        assert locked_manager.state is SessionState.UNLOCKED
        assert key.secret == MASTER_KEY.encode()

    @pytest.mark.asyncio
    async def test_wrong_key_stays_locked(self, locked_manager):
        await locked_manager.refresh()
        with pytest.raises(VerificationFailure) as excinfo:
            locked_manager.unlock("wrong-horse")
        assert excinfo.value.attempts == 1
        assert excinfo.value.remaining == 2
        assert locked_manager.state is SessionState.LOCKED

    @pytest.mark.asyncio
    async def test_lock_out_after_three_failures(self, locked_manager):
        await locked_manager.refresh()
        for _ in range(3):
            with pytest.raises(VerificationFailure):
                locked_manager.unlock("wrong-horse")
        assert locked_manager.locked_out
        with pytest.raises(TooManyAttempts):
            locked_manager.unlock(MASTER_KEY)
        assert locked_manager.state is SessionState.LOCKED

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, locked_manager):
        await locked_manager.refresh()
        with pytest.raises(VerificationFailure):
            locked_manager.unlock("wrong-horse")
        locked_manager.unlock(MASTER_KEY)
        assert locked_manager.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_configured_attempt_limit(self, locked_profiles):
        manager = SessionKeyManager(
            ACCOUNT_ID, locked_profiles,
            VaultConfig(kdf_iterations=10_000, max_unlock_attempts=1),
        )
        await manager.refresh()
        with pytest.raises(VerificationFailure) as excinfo:
            manager.unlock("wrong-horse")
        assert excinfo.value.remaining == 0
        with pytest.raises(TooManyAttempts):
            manager.unlock(MASTER_KEY)

    @pytest.mark.asyncio
    async def test_unlock_when_unlocked_rejected(self, locked_manager):
        await locked_manager.refresh()
        locked_manager.unlock(MASTER_KEY)
        with pytest.raises(SessionStateError):
            locked_manager.unlock(MASTER_KEY)

    @pytest.mark.asyncio
    async def test_unlock_without_master_key_rejected(self, manager):
        await manager.refresh()
        with pytest.raises(SessionStateError):
            manager.unlock(MASTER_KEY)


class TestLock:
    """Wiping the key."""

    @pytest.mark.asyncio
    async def test_lock_wipes_outstanding_references(self, locked_manager):
        await locked_manager.refresh()
        key = locked_manager.unlock(MASTER_KEY)
        assert locked_manager.lock() is SessionState.LOCKED
        with pytest.raises(NotUnlockedError):
            key.secret

    @pytest.mark.asyncio
    async def test_locked_key_cannot_reach_store(self, locked_manager, remote_store):
        await locked_manager.refresh()
        key = locked_manager.unlock(MASTER_KEY)
        locked_manager.lock()
        with pytest.raises(NotUnlockedError):
            await remote_store.list(key)

    def test_lock_from_any_state(self, manager):
        assert manager.lock() is SessionState.NO_MASTER_KEY

    @pytest.mark.asyncio
    async def test_sign_out_resets_attempts(self, locked_manager):
        await locked_manager.refresh()
        for _ in range(3):
            with pytest.raises(VerificationFailure):
                locked_manager.unlock("wrong-horse")
        locked_manager.sign_out()
        assert locked_manager.failed_attempts == 0
        locked_manager.unlock(MASTER_KEY)
        assert locked_manager.is_unlocked


class TestChangeSecret:
    """Master key replacement."""

    @pytest.mark.asyncio
    async def test_change(self, locked_manager, locked_profiles):
        await locked_manager.refresh()
        old = locked_manager.unlock(MASTER_KEY)
        new = await locked_manager.change_secret(MASTER_KEY, "battery-staple")
        assert not old.is_live
        assert new.secret == b"battery-staple"
        assert locked_profiles.hashes[ACCOUNT_ID] == hash_secret("battery-staple")
        locked_manager.lock()
        with pytest.raises(VerificationFailure):
            locked_manager.unlock(MASTER_KEY)
        locked_manager.unlock("battery-staple")

    @pytest.mark.asyncio
    async def test_change_requires_unlock(self, locked_manager):
        await locked_manager.refresh()
        with pytest.raises(NotUnlockedError):
            await locked_manager.change_secret(MASTER_KEY, "battery-staple")

    @pytest.mark.asyncio
    async def test_change_wrong_current(self, locked_manager, locked_profiles):
        await locked_manager.refresh()
        locked_manager.unlock(MASTER_KEY)
        with pytest.raises(VerificationFailure):
            await locked_manager.change_secret("wrong-horse", "battery-staple")
        assert locked_profiles.writes == 0


def _make_pool(fetchval=None):
    conn = MagicMock()
    conn.fetchval = AsyncMock(return_value=fetchval)
    conn.execute = AsyncMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool, conn


class TestPostgresProfileStore:
    """SQL issued against user_profiles."""

    @pytest.mark.asyncio
    async def test_get_hash(self):
        pool, conn = _make_pool(fetchval="abc123")
        store = PostgresProfileStore(pool)
        assert await store.get_master_key_hash(ACCOUNT_ID) == "abc123"
        sql, account = conn.fetchval.await_args.args
        assert "mono_password_hash" in sql
        assert account == ACCOUNT_ID

    @pytest.mark.asyncio
    async def test_missing_hash(self):
        pool, _ = _make_pool(fetchval="")
        assert await PostgresProfileStore(pool).get_master_key_hash(ACCOUNT_ID) is None

    @pytest.mark.asyncio
    async def test_set_hash(self):
        pool, conn = _make_pool()
        await PostgresProfileStore(pool).set_master_key_hash(ACCOUNT_ID, "digest")
        sql, account, digest = conn.execute.await_args.args
        assert sql.strip().startswith("UPDATE user_profiles")
        assert (account, digest) == (ACCOUNT_ID, "digest")
