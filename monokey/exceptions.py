"""
Vault Errors — exception taxonomy for the credential vault engine.

Structural errors (format, ownership) abort a whole operation. Decryption
errors are isolated per record while listing and fatal for single-record
operations.

Security Note:
    A DecryptionError never says whether the key was wrong or the data was
    corrupted. Both produce the same message.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for every error raised by the vault engine."""


class DecryptionError(VaultError):
    """Envelope could not be decrypted (wrong master key or corrupted data)."""

    def __init__(self, message: str = "Unable to decrypt data"):
        super().__init__(message)


class FormatError(VaultError, ValueError):
    """Unrecognized bundle version or malformed bundle content."""


class OwnershipError(VaultError):
    """A local bundle belongs to a different account."""

    def __init__(self, message: str, owner_label: Optional[str] = None):
        super().__init__(message)
        self.owner_label = owner_label


class VerificationFailure(VaultError):
    """Candidate master key did not match the stored hash."""

    def __init__(self, attempts: int, remaining: int):
        super().__init__(
            f"Invalid master key ({remaining} attempt(s) remaining)"
        )
        self.attempts = attempts
        self.remaining = remaining


class TooManyAttempts(VaultError):
    """Unlock refused after too many failed attempts."""


class NotUnlockedError(VaultError):
    """Operation needs the master key but the session is not unlocked."""


class SessionStateError(VaultError):
    """Illegal transition of the session state machine."""


class UnsavedChangesError(VaultError):
    """A dirty local bundle would be discarded without confirmation."""


class StoreNotActiveError(VaultError):
    """Local store has no bundle loaded or created."""


class CredentialNotFound(VaultError, KeyError):
    """No credential with the given id is owned by the account."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Credential not found"


class ConfigurationError(VaultError, ValueError):
    """Invalid caller-supplied settings (weak master key, empty charset)."""
