"""
Shared pytest fixtures for the MonoKey vault test suite.

Key derivation runs at the minimum iteration count so the suite stays fast.
Collaborators (profile store, row store) are replaced by in-memory fakes.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

os.environ.setdefault("VAULT_KDF_ITERATIONS", "10000")

from monokey.vault.config import VaultConfig, reset_config  # noqa: E402
from monokey.vault.crypto import hash_secret  # noqa: E402
from monokey.vault.local import LocalVaultStore  # noqa: E402
from monokey.vault.models import AccountIdentity, NewCredential  # noqa: E402
from monokey.vault.remote import RemoteVaultStore  # noqa: E402
from monokey.vault.session import SessionKey, SessionKeyManager  # noqa: E402

MASTER_KEY = "correct-horse"
ACCOUNT_ID = "0b7c6a0e-4a52-4f0e-9d55-8f1d1c2b3a4d"
ACCOUNT_EMAIL = "alice@example.com"


class InMemoryProfileStore:
    """AccountProfileStore keeping hashes in a dict."""

    def __init__(self, hashes: Optional[dict[str, str]] = None):
        self.hashes = dict(hashes or {})
        self.writes = 0
        self.fail_writes = False

    async def get_master_key_hash(self, account_id: str) -> Optional[str]:
        return self.hashes.get(account_id)

    async def set_master_key_hash(self, account_id: str, digest: str) -> None:
        if self.fail_writes:
            raise ConnectionError("profile store unavailable")
        self.writes += 1
        self.hashes[account_id] = digest


class InMemoryRowStore:
    """RowStore keeping rows in a dict, scoped by owner id."""

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _public(self, row: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in row.items() if k != "user_id"}

    async def insert(self, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        self.rows[row["id"]] = row
        return self._public(row)

    async def list_by_owner(self, owner_id: str) -> list[dict[str, Any]]:
        rows = [r for r in self.rows.values() if r["user_id"] == owner_id]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._public(r) for r in rows]

    async def get_by_id(self, row_id: str, owner_id: str) -> Optional[dict[str, Any]]:
        row = self.rows.get(row_id)
        if row is None or row["user_id"] != owner_id:
            return None
        return self._public(row)

    async def update_by_id(self, row_id: str, owner_id: str,
                           fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        row = self.rows.get(row_id)
        if row is None or row["user_id"] != owner_id:
            return None
        row.update(fields)
        row["updated_at"] = self._now()
        return self._public(row)

    async def delete_by_id(self, row_id: str, owner_id: str) -> bool:
        row = self.rows.get(row_id)
        if row is None or row["user_id"] != owner_id:
            return False
        del self.rows[row_id]
        return True


@pytest.fixture(autouse=True)
def _fresh_config():
    """Drop the cached process-wide config between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config():
    return VaultConfig(kdf_iterations=10_000)


@pytest.fixture
def identity():
    return AccountIdentity(
        account_id=ACCOUNT_ID, email=ACCOUNT_EMAIL, display_name="Alice",
    )


@pytest.fixture
def other_identity():
    return AccountIdentity(
        account_id="7f3e2d1c-0000-4000-8000-000000000001",
        email="bob@example.com",
        display_name="Bob",
    )


@pytest.fixture
def session_key():
    return SessionKey(ACCOUNT_ID, MASTER_KEY)


@pytest.fixture
def profiles():
    return InMemoryProfileStore()


@pytest.fixture
def locked_profiles():
    """Profile store where the account already has a master key."""
    return InMemoryProfileStore({ACCOUNT_ID: hash_secret(MASTER_KEY)})


@pytest.fixture
def manager(profiles, config):
    return SessionKeyManager(ACCOUNT_ID, profiles, config)


@pytest.fixture
def locked_manager(locked_profiles, config):
    return SessionKeyManager(ACCOUNT_ID, locked_profiles, config)


@pytest.fixture
def rows():
    return InMemoryRowStore()


@pytest.fixture
def remote_store(rows, config):
    return RemoteVaultStore(ACCOUNT_ID, rows, config)


@pytest.fixture
def local_store(identity, config):
    store = LocalVaultStore(identity, config)
    store.new_bundle()
    return store


@pytest.fixture
def example_credential():
    return NewCredential(
        account_name="Example",
        username="a@b.com",
        password="p@ss",
        recovery_email="recovery@b.com",
        recovery_mobile="+15550100",
        two_factor_codes="1111 2222 3333",
    )


@pytest.fixture
def master_key():
    return MASTER_KEY


@pytest.fixture
def account_id():
    return ACCOUNT_ID
