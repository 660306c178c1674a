"""
Vault Models — plaintext and ciphertext shapes of a stored credential.

Sensitive fields (username, password, recovery contacts, 2FA backup codes)
only ever leave memory inside ``EncryptedRecord.encrypted_data``. The
account name and icon stay in clear text so a vault can be listed without
unlocking it.

Field names follow the wire format (camelCase) through pydantic aliases;
Python code uses the snake_case attribute names.
"""
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_ICON = "🔐"

SECRET_FIELDS = (
    "username",
    "password",
    "recovery_email",
    "recovery_mobile",
    "two_factor_codes",
)
CLEAR_FIELDS = ("account_name", "icon")

_ID_ALPHABET = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_local_id() -> str:
    """Id for a credential created in a local bundle."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"local_{int(time.time() * 1000)}_{suffix}"


class WireModel(BaseModel):
    """Base for models that travel as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AccountIdentity(BaseModel):
    """Who the caller is, as supplied by the identity provider."""

    account_id: str = Field(min_length=1)
    email: str = Field(min_length=1)
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        """Human-readable owner label."""
        return self.display_name or self.email


class CredentialSecrets(WireModel):
    """The sensitive part of a credential: the encrypted payload."""

    username: str = ""
    password: str = Field(default="", repr=False)
    recovery_email: Optional[str] = None
    recovery_mobile: Optional[str] = None
    two_factor_codes: Optional[str] = Field(default=None, repr=False)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CredentialSecrets":
        return cls.model_validate(payload)


class NewCredential(WireModel):
    """Fields a caller supplies to create a credential."""

    account_name: str = Field(min_length=1)
    username: str = ""
    password: str = Field(default="", repr=False)
    recovery_email: Optional[str] = None
    recovery_mobile: Optional[str] = None
    two_factor_codes: Optional[str] = Field(default=None, repr=False)
    icon: str = DEFAULT_ICON

    def secrets(self) -> CredentialSecrets:
        return CredentialSecrets(**{f: getattr(self, f) for f in SECRET_FIELDS})


class CredentialUpdate(WireModel):
    """A partial update.

    Only fields the caller explicitly sets are applied. An absent field
    keeps its stored value; an explicit empty string clears it. The
    account name cannot be cleared.
    """

    account_name: Optional[str] = Field(default=None, min_length=1)
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    recovery_email: Optional[str] = None
    recovery_mobile: Optional[str] = None
    two_factor_codes: Optional[str] = Field(default=None, repr=False)
    icon: Optional[str] = None

    def secret_changes(self) -> dict[str, Any]:
        changes = {}
        for name in SECRET_FIELDS:
            if name not in self.model_fields_set:
                continue
            value = getattr(self, name)
            if value is None and name in ("username", "password"):
                value = ""
            changes[name] = value
        return changes

    def clear_changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in CLEAR_FIELDS
            if name in self.model_fields_set and getattr(self, name) is not None
        }

    def merge(self, current: CredentialSecrets) -> CredentialSecrets:
        """Shallow-merge the supplied sensitive fields over ``current``."""
        return current.model_copy(update=self.secret_changes())


class EncryptedRecord(WireModel):
    """A credential as persisted: clear-text label and icon, sealed payload."""

    id: str
    account_name: str
    encrypted_data: str = Field(repr=False)
    icon: Optional[str] = DEFAULT_ICON
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Credential(WireModel):
    """A decrypted credential."""

    id: str
    account_name: str
    username: str = ""
    password: str = Field(default="", repr=False)
    recovery_email: Optional[str] = None
    recovery_mobile: Optional[str] = None
    two_factor_codes: Optional[str] = Field(default=None, repr=False)
    icon: Optional[str] = DEFAULT_ICON
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: EncryptedRecord,
                    secrets_: CredentialSecrets) -> "Credential":
        return cls(
            id=record.id,
            account_name=record.account_name,
            icon=record.icon,
            created_at=record.created_at,
            updated_at=record.updated_at,
            **{f: getattr(secrets_, f) for f in SECRET_FIELDS},
        )

    def secrets(self) -> CredentialSecrets:
        return CredentialSecrets(**{f: getattr(self, f) for f in SECRET_FIELDS})


class ListResult(BaseModel):
    """Outcome of a listing: readable credentials plus ids that failed."""

    credentials: list[Credential] = Field(default_factory=list)
    corrupted: list[str] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.credentials)

    def get(self, credential_id: str) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def search(self, term: str) -> list[Credential]:
        """Credentials whose account name or username contains ``term``."""
        needle = term.strip().lower()
        return [
            c for c in self.credentials
            if needle in c.account_name.lower() or needle in c.username.lower()
        ]


class BundleMetadata(WireModel):
    created_at: datetime = Field(default_factory=utcnow)
    last_modified: datetime = Field(default_factory=utcnow)
    total_credentials: int = Field(default=0, ge=0)


class VaultBundle(WireModel):
    """Local-file container for one account's encrypted credentials."""

    version: str
    owner_tag: Optional[str] = Field(default=None, pattern=r"^[0-9a-f]{64}$")
    credentials: list[EncryptedRecord] = Field(default_factory=list)
    metadata: BundleMetadata = Field(default_factory=BundleMetadata)

    @model_validator(mode="after")
    def validate_count(self) -> "VaultBundle":
        """Ensure metadata.totalCredentials matches the record count."""
        if self.metadata.total_credentials != len(self.credentials):
            raise ValueError(
                f"metadata.totalCredentials is {self.metadata.total_credentials} "
                f"but the bundle holds {len(self.credentials)} credential(s)"
            )
        return self
