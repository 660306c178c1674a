"""MonoKey Vault — client-held, zero-knowledge credential storage.

Security Note (Threat Model):
    Every sensitive credential field is encrypted under the user's master
    key before it reaches any store. The master key lives only in process
    memory while the session is unlocked; its SHA-256 hash on the account
    profile is used for verification only. A memory dump of an unlocked
    process exposes the key. This is an accepted limitation.
"""

from .config import VaultConfig, get_config
from .crypto import (
    CipherEnvelope,
    decrypt,
    derive_key,
    encrypt,
    hash_secret,
    verify_secret,
)
from .generator import SecretOptions, generate_secret, require_secret, secret_strength
from .models import (
    AccountIdentity,
    Credential,
    CredentialUpdate,
    EncryptedRecord,
    ListResult,
    NewCredential,
    VaultBundle,
)
from .session import (
    PostgresProfileStore,
    SessionKey,
    SessionKeyManager,
    SessionState,
)
from .store import VaultStore
from .remote import PostgresRowStore, RemoteVaultStore
from .local import LocalState, LocalVaultStore, owner_tag
from .key_rotation import rotate_master_key
from .coordinator import VaultCoordinator

__all__ = [
    "VaultConfig",
    "get_config",
    "CipherEnvelope",
    "decrypt",
    "derive_key",
    "encrypt",
    "hash_secret",
    "verify_secret",
    "SecretOptions",
    "generate_secret",
    "require_secret",
    "secret_strength",
    "AccountIdentity",
    "Credential",
    "CredentialUpdate",
    "EncryptedRecord",
    "ListResult",
    "NewCredential",
    "VaultBundle",
    "PostgresProfileStore",
    "SessionKey",
    "SessionKeyManager",
    "SessionState",
    "VaultStore",
    "PostgresRowStore",
    "RemoteVaultStore",
    "LocalState",
    "LocalVaultStore",
    "owner_tag",
    "rotate_master_key",
    "VaultCoordinator",
]
