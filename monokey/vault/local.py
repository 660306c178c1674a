"""
LocalVaultStore — a portable, ownership-tagged bundle held in memory.

Bundle wire format (UTF-8 JSON)::

    {
      "version": "1.1.0",
      "ownerTag": "<sha256 hex>",
      "credentials": [
        {"id", "accountName", "encryptedData", "icon", "createdAt", "updatedAt"}
      ],
      "metadata": {"createdAt", "lastModified", "totalCredentials"}
    }

States: NO_FILE → (open / new_bundle) → ACTIVE → (discard) → NO_FILE.
ACTIVE carries a ``dirty`` flag set by every mutation and cleared by a
successful save. Leaving a dirty bundle requires ``confirm=True``.

The owner tag is checked before any decryption is attempted, so a file
belonging to someone else is rejected without spending a master-key try.
The working set stays encrypted; ``list`` decrypts on demand and ``save``
re-encrypts every readable record with a fresh envelope.

Security Note:
    The owner tag is an identity marker, not a secret and not an access
    control. Confidentiality rests on the master key alone.
"""
from __future__ import annotations

import asyncio
import enum
import hashlib
import hmac
import logging
import os
import tempfile
from collections.abc import Iterable
from datetime import date
from pathlib import Path
from typing import Optional, Union

import orjson
from pydantic import ValidationError

from ..exceptions import (
    CredentialNotFound,
    DecryptionError,
    FormatError,
    OwnershipError,
    StoreNotActiveError,
    UnsavedChangesError,
)
from .config import VaultConfig
from .models import (
    AccountIdentity,
    BundleMetadata,
    Credential,
    CredentialUpdate,
    EncryptedRecord,
    ListResult,
    NewCredential,
    VaultBundle,
    new_local_id,
    utcnow,
)
from .session import SessionKey
from .store import VaultStore

logger = logging.getLogger("monokey.vault")

FORMAT_VERSION = "1.1.0"
SUPPORTED_MAJOR = 1
FILE_EXTENSION = ".monokey.json"


class LocalState(str, enum.Enum):
    NO_FILE = "no_file"
    ACTIVE = "active"


def owner_tag(identity: AccountIdentity) -> str:
    """Opaque tag binding a bundle to one account (id + email)."""
    material = (
        f"monokey-owner:{identity.account_id}:{identity.email.strip().lower()}"
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def default_filename(day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"monokey-credentials-{day.isoformat()}{FILE_EXTENSION}"


def parse_bundle(data: Union[bytes, str]) -> VaultBundle:
    """Parse and validate bundle bytes.

    The version is checked before the structure is parsed.

    Raises:
        FormatError: Not JSON, unsupported version or malformed bundle.
    """
    try:
        raw = orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise FormatError("Invalid MonoKey file format: not JSON") from err
    if not isinstance(raw, dict):
        raise FormatError("Invalid MonoKey file format: expected an object")
    version = raw.get("version")
    if not isinstance(version, str) or not version:
        raise FormatError("Invalid MonoKey file format: missing version")
    major = version.split(".", 1)[0]
    if not major.isdigit() or int(major) != SUPPORTED_MAJOR:
        raise FormatError(f"Unsupported MonoKey file version {version!r}")
    if not isinstance(raw.get("credentials"), list):
        raise FormatError("Invalid MonoKey file format: credentials must be a list")
    try:
        return VaultBundle.model_validate(raw)
    except ValidationError as err:
        raise FormatError(f"Invalid MonoKey file format: {err}") from err


def _write_atomic(path: Path, data: bytes) -> None:
    """Write to a temporary sibling file, then rename over ``path``."""
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class LocalVaultStore(VaultStore):
    """VaultStore over a single portable bundle.

    Args:
        identity: The signed-in account; decides the owner tag.
        config: Optional vault settings.
    """

    kind = "local"

    def __init__(self, identity: AccountIdentity,
                 config: Optional[VaultConfig] = None):
        super().__init__(identity.account_id, config)
        self.identity = identity
        self._tag = owner_tag(identity)
        self._state = LocalState.NO_FILE
        self._dirty = False
        self._records: list[EncryptedRecord] = []
        self._created_at = None
        self.path: Optional[Path] = None

    def __repr__(self) -> str:
        return (
            f"<LocalVaultStore account={self.account_id} "
            f"state={self._state.value} dirty={self._dirty} "
            f"records={len(self._records)}>"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LocalState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is LocalState.ACTIVE

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def owner_tag(self) -> str:
        return self._tag

    @property
    def count(self) -> int:
        return len(self._records)

    def _require_active(self) -> None:
        if self._state is not LocalState.ACTIVE:
            raise StoreNotActiveError("No local vault file is open")

    def _ensure_can_leave(self, confirm: bool) -> None:
        if self._dirty and not confirm:
            raise UnsavedChangesError(
                "The local vault has unsaved changes; "
                "save it or confirm discarding them"
            )

    def _touch(self) -> None:
        self._dirty = True

    def new_bundle(self, confirm: bool = False) -> None:
        """Start an empty bundle owned by the current account (not dirty)."""
        self._ensure_can_leave(confirm)
        self._records = []
        self._created_at = utcnow()
        self._state = LocalState.ACTIVE
        self._dirty = False
        self.path = None
        logger.info("New local vault for account=%s", self.account_id)

    def discard(self, confirm: bool = False) -> None:
        """Drop the open bundle and return to NO_FILE.

        Raises:
            UnsavedChangesError: If dirty and ``confirm`` is not set.
        """
        self._ensure_can_leave(confirm)
        self._records = []
        self._created_at = None
        self._state = LocalState.NO_FILE
        self._dirty = False
        self.path = None
        logger.info("Local vault discarded for account=%s", self.account_id)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def _check_owner(self, bundle: VaultBundle,
                     known_accounts: Iterable[AccountIdentity],
                     adopt_unowned: bool) -> bool:
        """Return True when an unowned bundle was adopted."""
        if bundle.owner_tag is None:
            if adopt_unowned:
                logger.info(
                    "Adopting unowned local vault (version %s) for account=%s",
                    bundle.version, self.account_id,
                )
                return True
            raise OwnershipError(
                "This file has no owner; it cannot be verified as yours"
            )
        if hmac.compare_digest(
            bundle.owner_tag.encode("utf-8"), self._tag.encode("utf-8"),
        ):
            return False
        label = None
        for account in known_accounts:
            if owner_tag(account) == bundle.owner_tag:
                label = account.label
                break
        logger.warning(
            "Rejected local vault owned by another account (requested by account=%s)",
            self.account_id,
        )
        message = "This file belongs to another account"
        if label:
            message = f"{message} ({label})"
        raise OwnershipError(message, owner_label=label)

    def open(
        self,
        data: Union[bytes, str],
        known_accounts: Iterable[AccountIdentity] = (),
        adopt_unowned: bool = False,
        confirm: bool = False,
    ) -> int:
        """Parse a bundle, verify ownership and make it the working set.

        No decryption happens here.

        Args:
            data: Bundle bytes.
            known_accounts: Identities used to name the owner of a foreign file.
            adopt_unowned: Claim a legacy bundle that has no owner tag.
            confirm: Allow replacing a dirty working set.

        Returns:
            Number of records in the bundle.

        Raises:
            UnsavedChangesError: Dirty working set and no ``confirm``.
            FormatError: Malformed or unsupported bundle.
            OwnershipError: Bundle belongs to another account.
        """
        self._ensure_can_leave(confirm)
        try:
            bundle = parse_bundle(data)
        except FormatError as err:
            logger.error("Cannot open local vault: %s", err)
            raise
        adopted = self._check_owner(bundle, known_accounts, adopt_unowned)
        self._records = list(bundle.credentials)
        self._created_at = bundle.metadata.created_at
        self._state = LocalState.ACTIVE
        self._dirty = adopted
        self.path = None
        logger.info(
            "Opened local vault for account=%s: %d record(s)",
            self.account_id, len(self._records),
        )
        return len(self._records)

    async def load(
        self,
        data: Union[bytes, str],
        session_key: SessionKey,
        known_accounts: Iterable[AccountIdentity] = (),
        adopt_unowned: bool = False,
        confirm: bool = False,
    ) -> ListResult:
        """Open a bundle and decrypt every record under ``session_key``.

        Ownership is verified before any decryption.
        """
        self.open(
            data, known_accounts=known_accounts,
            adopt_unowned=adopt_unowned, confirm=confirm,
        )
        return await self.list(session_key)

    def open_file(self, path: Union[str, Path], **kwargs) -> int:
        """Read a bundle from disk and :meth:`open` it."""
        path = Path(path)
        count = self.open(path.read_bytes(), **kwargs)
        self.path = path
        return count

    # ------------------------------------------------------------------
    # VaultStore API
    # ------------------------------------------------------------------

    def _index(self, credential_id: str) -> int:
        for i, record in enumerate(self._records):
            if record.id == credential_id:
                return i
        raise CredentialNotFound(f"Credential {credential_id} not found")

    async def list(self, session_key: SessionKey) -> ListResult:
        self._require_active()
        return await asyncio.to_thread(
            self.unseal_all, list(self._records), session_key,
        )

    async def create(self, plain: NewCredential, session_key: SessionKey) -> Credential:
        self._require_active()
        secrets_ = plain.secrets()
        async with self._lock:
            encrypted_data = await asyncio.to_thread(self.seal, secrets_, session_key)
            now = utcnow()
            record = EncryptedRecord(
                id=new_local_id(),
                account_name=plain.account_name,
                encrypted_data=encrypted_data,
                icon=plain.icon,
                created_at=now,
                updated_at=now,
            )
            self._records.append(record)
            self._touch()
        logger.debug("Local create: account=%s id=%s", self.account_id, record.id)
        return Credential.from_record(record, secrets_)

    async def update(self, credential_id: str, changes: CredentialUpdate,
                     session_key: SessionKey) -> Credential:
        """Decrypt, merge, re-encrypt and replace one record.

        Raises:
            CredentialNotFound: Unknown id.
            DecryptionError: The stored envelope cannot be decrypted.
        """
        self._require_active()
        async with self._lock:
            idx = self._index(credential_id)
            current = self._records[idx]
            secrets_ = await asyncio.to_thread(self.unseal, current, session_key)
            merged = changes.merge(secrets_)
            encrypted_data = await asyncio.to_thread(self.seal, merged, session_key)
            updated = current.model_copy(update={
                "encrypted_data": encrypted_data,
                "updated_at": utcnow(),
                **changes.clear_changes(),
            })
            self._records[idx] = updated
            self._touch()
        logger.debug("Local update: account=%s id=%s", self.account_id, credential_id)
        return Credential.from_record(updated, merged)

    async def delete(self, credential_id: str) -> None:
        self._require_active()
        async with self._lock:
            del self._records[self._index(credential_id)]
            self._touch()
        logger.debug("Local delete: account=%s id=%s", self.account_id, credential_id)

    async def records(self) -> list[EncryptedRecord]:
        self._require_active()
        return list(self._records)

    async def replace_envelope(self, credential_id: str, encrypted_data: str) -> None:
        self._require_active()
        async with self._lock:
            idx = self._index(credential_id)
            self._records[idx] = self._records[idx].model_copy(
                update={"encrypted_data": encrypted_data},
            )
            self._touch()

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def _render(self, session_key: SessionKey) -> tuple[list[EncryptedRecord], bytes]:
        """Build the full bundle with fresh envelopes, without mutating state.

        Records that cannot be decrypted are written back unchanged.
        """
        self._secret(session_key)
        fresh = []
        kept = 0
        for record in self._records:
            try:
                secrets_ = self.unseal(record, session_key)
            except DecryptionError:
                kept += 1
                fresh.append(record)
                continue
            fresh.append(record.model_copy(
                update={"encrypted_data": self.seal(secrets_, session_key)},
            ))
        if kept:
            logger.warning(
                "Saving %d unreadable credential(s) unchanged for account=%s",
                kept, self.account_id,
            )
        bundle = VaultBundle(
            version=FORMAT_VERSION,
            owner_tag=self._tag,
            credentials=fresh,
            metadata=BundleMetadata(
                created_at=self._created_at or utcnow(),
                last_modified=utcnow(),
                total_credentials=len(fresh),
            ),
        )
        return fresh, orjson.dumps(bundle.to_wire(), option=orjson.OPT_INDENT_2)

    def _commit(self, records: list[EncryptedRecord]) -> None:
        self._records = records
        self._dirty = False

    async def save(self, session_key: SessionKey) -> bytes:
        """Serialize the whole bundle and clear the dirty flag.

        Returns:
            Bundle bytes, ready to be written or downloaded.
        """
        self._require_active()
        async with self._lock:
            records, data = await asyncio.to_thread(self._render, session_key)
            self._commit(records)
        logger.info(
            "Saved local vault for account=%s: %d record(s)",
            self.account_id, len(records),
        )
        return data

    async def save_to(self, path: Union[str, Path, None],
                      session_key: SessionKey) -> Path:
        """Save the bundle to disk atomically.

        ``path`` may be a directory, in which case the default file name is
        used. The dirty flag is only cleared once the file is in place.
        """
        self._require_active()
        target = Path(path) if path is not None else self.path
        if target is None:
            target = Path.cwd() / default_filename()
        elif target.is_dir():
            target = target / default_filename()
        async with self._lock:
            records, data = await asyncio.to_thread(self._render, session_key)
            await asyncio.to_thread(_write_atomic, target, data)
            self._commit(records)
        self.path = target
        logger.info(
            "Saved local vault for account=%s to %s", self.account_id, target.name,
        )
        return target
