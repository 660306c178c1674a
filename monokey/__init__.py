"""MonoKey Vault.

Zero-knowledge credential vault engine.
"""
from .version import __version__
from .exceptions import (
    VaultError,
    DecryptionError,
    FormatError,
    OwnershipError,
    VerificationFailure,
    TooManyAttempts,
    NotUnlockedError,
    SessionStateError,
    UnsavedChangesError,
    StoreNotActiveError,
    CredentialNotFound,
    ConfigurationError,
)

__all__ = [
    "__version__",
    "VaultError",
    "DecryptionError",
    "FormatError",
    "OwnershipError",
    "VerificationFailure",
    "TooManyAttempts",
    "NotUnlockedError",
    "SessionStateError",
    "UnsavedChangesError",
    "StoreNotActiveError",
    "CredentialNotFound",
    "ConfigurationError",
]
