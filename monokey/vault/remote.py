"""
RemoteVaultStore — one encrypted row per credential in a multi-tenant store.

Row-level isolation by owner is the backing store's job (row-level security
on the ``credentials`` table); this module always scopes its queries by
owner id but does not enforce isolation itself.

Security Note:
    Only ``account_name`` and ``icon`` are stored in clear text. Never log
    ``encrypted_data`` or decrypted fields; log ids and counts only.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from ..exceptions import CredentialNotFound
from .config import VaultConfig
from .models import (
    Credential,
    CredentialUpdate,
    EncryptedRecord,
    ListResult,
    NewCredential,
)
from .session import SessionKey
from .store import VaultStore

logger = logging.getLogger("monokey.vault")

_COLUMNS = "id, account_name, encrypted_data, icon, created_at, updated_at"
_UPDATABLE = ("account_name", "encrypted_data", "icon")

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_INSERT_CREDENTIAL = f"""
INSERT INTO credentials (user_id, account_name, encrypted_data, icon)
VALUES ($1, $2, $3, $4)
RETURNING {_COLUMNS}
"""

_SELECT_BY_OWNER = f"""
SELECT {_COLUMNS}
FROM credentials
WHERE user_id = $1
ORDER BY created_at DESC
"""

_SELECT_ONE = f"""
SELECT {_COLUMNS}
FROM credentials
WHERE id = $1 AND user_id = $2
"""

_DELETE_CREDENTIAL = """
DELETE FROM credentials
WHERE id = $1 AND user_id = $2
RETURNING id
"""


def _update_statement(columns: list[str]) -> str:
    assignments = ", ".join(
        f"{name} = ${i}" for i, name in enumerate(columns, start=3)
    )
    return (
        f"UPDATE credentials SET {assignments}, updated_at = NOW() "
        f"WHERE id = $1 AND user_id = $2 RETURNING {_COLUMNS}"
    )


# ---------------------------------------------------------------------------
# Row store collaborator
# ---------------------------------------------------------------------------

class RowStore(Protocol):
    """Key/row interface of the remote backend, scoped by owner id."""

    async def insert(self, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    async def list_by_owner(self, owner_id: str) -> list[dict[str, Any]]:
        ...

    async def get_by_id(self, row_id: str, owner_id: str) -> Optional[dict[str, Any]]:
        ...

    async def update_by_id(self, row_id: str, owner_id: str,
                           fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        ...

    async def delete_by_id(self, row_id: str, owner_id: str) -> bool:
        ...


class PostgresRowStore:
    """RowStore over the ``credentials`` table.

    Args:
        db_pool: asyncpg-compatible connection pool.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def insert(self, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _INSERT_CREDENTIAL,
                owner_id,
                fields["account_name"],
                fields["encrypted_data"],
                fields.get("icon"),
            )
        return dict(row)

    async def list_by_owner(self, owner_id: str) -> list[dict[str, Any]]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_BY_OWNER, owner_id)
        return [dict(row) for row in rows]

    async def get_by_id(self, row_id: str, owner_id: str) -> Optional[dict[str, Any]]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_ONE, row_id, owner_id)
        return dict(row) if row is not None else None

    async def update_by_id(self, row_id: str, owner_id: str,
                           fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        columns = [name for name in _UPDATABLE if name in fields]
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update column(s): {sorted(unknown)}")
        if not columns:
            return await self.get_by_id(row_id, owner_id)
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(
                _update_statement(columns),
                row_id, owner_id, *(fields[name] for name in columns),
            )
        return dict(row) if row is not None else None

    async def delete_by_id(self, row_id: str, owner_id: str) -> bool:
        async with self._db.acquire() as conn:
            deleted = await conn.fetchval(_DELETE_CREDENTIAL, row_id, owner_id)
        return deleted is not None


def _to_record(row: dict[str, Any]) -> EncryptedRecord:
    return EncryptedRecord(
        id=str(row["id"]),
        account_name=row["account_name"],
        encrypted_data=row["encrypted_data"],
        icon=row.get("icon"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class RemoteVaultStore(VaultStore):
    """VaultStore backed by a multi-tenant RowStore.

    Args:
        owner_id: Authenticated account id; every row is scoped by it.
        rows: RowStore implementation (e.g. PostgresRowStore).
        config: Optional vault settings.
    """

    kind = "remote"

    def __init__(self, owner_id: str, rows: RowStore,
                 config: Optional[VaultConfig] = None):
        super().__init__(owner_id, config)
        self._rows = rows

    async def _fetch(self, credential_id: str) -> EncryptedRecord:
        row = await self._rows.get_by_id(credential_id, self.account_id)
        if row is None:
            raise CredentialNotFound(f"Credential {credential_id} not found")
        return _to_record(row)

    async def list(self, session_key: SessionKey) -> ListResult:
        rows = await self._rows.list_by_owner(self.account_id)
        result = await asyncio.to_thread(
            self.unseal_all, [_to_record(row) for row in rows], session_key,
        )
        logger.debug(
            "Remote list: account=%s %d credential(s)",
            self.account_id, len(result.credentials),
        )
        return result

    async def create(self, plain: NewCredential, session_key: SessionKey) -> Credential:
        secrets_ = plain.secrets()
        async with self._lock:
            encrypted_data = await asyncio.to_thread(self.seal, secrets_, session_key)
            row = await self._rows.insert(self.account_id, {
                "account_name": plain.account_name,
                "encrypted_data": encrypted_data,
                "icon": plain.icon,
            })
        record = _to_record(row)
        logger.debug("Remote create: account=%s id=%s", self.account_id, record.id)
        return Credential.from_record(record, secrets_)

    async def update(self, credential_id: str, changes: CredentialUpdate,
                     session_key: SessionKey) -> Credential:
        """Fetch, decrypt, merge, re-encrypt and replace the whole envelope.

        Raises:
            CredentialNotFound: If the row does not exist for this owner.
            DecryptionError: If the stored envelope cannot be decrypted.
        """
        async with self._lock:
            current = await self._fetch(credential_id)
            secrets_ = await asyncio.to_thread(self.unseal, current, session_key)
            merged = changes.merge(secrets_)
            fields = {
                "encrypted_data": await asyncio.to_thread(self.seal, merged, session_key),
            }
            fields.update(changes.clear_changes())
            row = await self._rows.update_by_id(
                credential_id, self.account_id, fields,
            )
        if row is None:
            raise CredentialNotFound(f"Credential {credential_id} not found")
        logger.debug("Remote update: account=%s id=%s", self.account_id, credential_id)
        return Credential.from_record(_to_record(row), merged)

    async def delete(self, credential_id: str) -> None:
        async with self._lock:
            deleted = await self._rows.delete_by_id(credential_id, self.account_id)
        if not deleted:
            raise CredentialNotFound(f"Credential {credential_id} not found")
        logger.debug("Remote delete: account=%s id=%s", self.account_id, credential_id)

    async def records(self) -> list[EncryptedRecord]:
        rows = await self._rows.list_by_owner(self.account_id)
        return [_to_record(row) for row in rows]

    async def replace_envelope(self, credential_id: str, encrypted_data: str) -> None:
        async with self._lock:
            row = await self._rows.update_by_id(
                credential_id, self.account_id, {"encrypted_data": encrypted_data},
            )
        if row is None:
            raise CredentialNotFound(f"Credential {credential_id} not found")
