"""
VaultStore — the storage strategy shared by the remote and local backends.

Every method that touches sensitive fields takes the caller's SessionKey for
the duration of that one call. ``list``, ``create`` and ``update`` always
decrypt, merge and re-encrypt whole payloads; an envelope is never patched
in place.

``seal`` and ``unseal`` are CPU-bound (one PBKDF2 derivation each); the async
methods of concrete stores run them with ``asyncio.to_thread`` so a large
vault does not stall the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Optional

from ..exceptions import DecryptionError, NotUnlockedError
from .config import VaultConfig, get_config
from .crypto import decrypt_payload, encrypt_payload
from .models import (
    Credential,
    CredentialSecrets,
    CredentialUpdate,
    EncryptedRecord,
    ListResult,
    NewCredential,
)
from .session import SessionKey

logger = logging.getLogger("monokey.vault")


class VaultStore(ABC):
    """Abstract credential store bound to one account."""

    kind: str = "abstract"

    def __init__(self, account_id: str, config: Optional[VaultConfig] = None):
        self.account_id = account_id
        self.config = config or get_config()
        # single writer per store instance
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} account={self.account_id}>"

    # ------------------------------------------------------------------
    # Sealing helpers
    # ------------------------------------------------------------------

    def _secret(self, session_key: SessionKey) -> bytes:
        """Read the master key for one call, checking it belongs to us."""
        if session_key is None:
            raise NotUnlockedError("Vault is locked")
        if session_key.account_id != self.account_id:
            raise NotUnlockedError(
                "Session key belongs to a different account"
            )
        return session_key.secret

    def seal(self, secrets_: CredentialSecrets, session_key: SessionKey) -> str:
        return encrypt_payload(
            secrets_.to_payload(), self._secret(session_key), self.config,
        )

    def unseal(self, record: EncryptedRecord, session_key: SessionKey) -> CredentialSecrets:
        """Decrypt a record payload.

        Raises:
            DecryptionError: Wrong key or corrupted envelope.
        """
        payload = decrypt_payload(
            record.encrypted_data, self._secret(session_key), self.config,
        )
        try:
            return CredentialSecrets.from_payload(payload)
        except ValueError as err:
            raise DecryptionError() from err

    def unseal_all(
        self, records: Iterable[EncryptedRecord], session_key: SessionKey,
    ) -> ListResult:
        """Decrypt many records, isolating failures per record."""
        self._secret(session_key)
        result = ListResult()
        for record in records:
            try:
                secrets_ = self.unseal(record, session_key)
            except DecryptionError:
                logger.warning(
                    "Skipping unreadable credential id=%s for account=%s",
                    record.id, self.account_id,
                )
                result.corrupted.append(record.id)
                continue
            result.credentials.append(Credential.from_record(record, secrets_))
        if result.corrupted:
            logger.info(
                "Listed %d credential(s), %d unreadable, account=%s",
                len(result.credentials), len(result.corrupted), self.account_id,
            )
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @abstractmethod
    async def list(self, session_key: SessionKey) -> ListResult:
        """Decrypt and return every credential; unreadable ones are reported."""

    @abstractmethod
    async def create(self, plain: NewCredential, session_key: SessionKey) -> Credential:
        """Encrypt and store a new credential."""

    @abstractmethod
    async def update(self, credential_id: str, changes: CredentialUpdate,
                     session_key: SessionKey) -> Credential:
        """Decrypt, merge ``changes``, re-encrypt and replace a credential."""

    @abstractmethod
    async def delete(self, credential_id: str) -> None:
        """Remove a credential."""

    # Access to sealed records, used for master-key rotation.

    @abstractmethod
    async def records(self) -> list[EncryptedRecord]:
        """Return the stored records without decrypting them."""

    @abstractmethod
    async def replace_envelope(self, credential_id: str, encrypted_data: str) -> None:
        """Swap the sealed payload of one record."""
