"""
Session Keys — the state machine that holds the master key in memory.

States:
    NO_MASTER_KEY → account has never set up a master key
    LOCKED        → a verification hash exists, the key is not in memory
    UNLOCKED      → the key is held in memory as a SessionKey

Only ``set_up``, ``unlock``, ``change_secret`` and ``lock`` write the key.
Stores receive the SessionKey by reference for one call at a time.

Security Note:
    The master key is never persisted. Only its SHA-256 verification hash
    is stored on the account profile. A memory dump of the process while
    unlocked exposes the key; this is an accepted limitation.
"""
import enum
import logging
from typing import Any, Optional, Protocol

from ..exceptions import (
    ConfigurationError,
    NotUnlockedError,
    SessionStateError,
    TooManyAttempts,
    VerificationFailure,
)
from .config import VaultConfig, get_config
from .crypto import Secret, hash_secret, verify_secret

logger = logging.getLogger("monokey.vault")


class SessionState(str, enum.Enum):
    NO_MASTER_KEY = "no_master_key"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class SessionKey:
    """The master key while held in volatile memory.

    Bound to one account. Once wiped, every read raises NotUnlockedError,
    including reads through references callers kept around.
    """

    __slots__ = ("account_id", "_buf")

    def __init__(self, account_id: str, secret: Secret):
        self.account_id = account_id
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        self._buf: Optional[bytearray] = bytearray(secret)

    def __repr__(self) -> str:
        state = "wiped" if self._buf is None else "live"
        return f"<SessionKey account={self.account_id} {state}>"

    @property
    def is_live(self) -> bool:
        return self._buf is not None

    @property
    def secret(self) -> bytes:
        if self._buf is None:
            raise NotUnlockedError("Master key is not unlocked")
        return bytes(self._buf)

    def wipe(self) -> None:
        """Zero the buffer and drop it."""
        if self._buf is not None:
            for i in range(len(self._buf)):
                self._buf[i] = 0
            self._buf = None


# ---------------------------------------------------------------------------
# Account profile collaborator
# ---------------------------------------------------------------------------

class AccountProfileStore(Protocol):
    """Where the master-key verification hash lives."""

    async def get_master_key_hash(self, account_id: str) -> Optional[str]:
        ...

    async def set_master_key_hash(self, account_id: str, digest: str) -> None:
        ...


_SELECT_HASH = """
SELECT mono_password_hash FROM user_profiles WHERE id = $1
"""

_UPDATE_HASH = """
UPDATE user_profiles SET mono_password_hash = $2, updated_at = NOW()
WHERE id = $1
"""


class PostgresProfileStore:
    """AccountProfileStore over the ``user_profiles`` table.

    Args:
        db_pool: asyncpg-compatible connection pool.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def get_master_key_hash(self, account_id: str) -> Optional[str]:
        async with self._db.acquire() as conn:
            digest = await conn.fetchval(_SELECT_HASH, account_id)
        return digest or None

    async def set_master_key_hash(self, account_id: str, digest: str) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(_UPDATE_HASH, account_id, digest)
        logger.info("Master key hash updated for account=%s", account_id)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class SessionKeyManager:
    """Gatekeeper for the master key of one signed-in account.

    Call ``refresh()`` once after sign-in to settle the initial state from the
    stored hash.
    """

    def __init__(
        self,
        account_id: str,
        profiles: AccountProfileStore,
        config: Optional[VaultConfig] = None,
    ):
        self.account_id = account_id
        self._profiles = profiles
        self.config = config or get_config()
        self._digest: Optional[str] = None
        self._key: Optional[SessionKey] = None
        self._failed_attempts = 0

    def __repr__(self) -> str:
        return f"<SessionKeyManager account={self.account_id} state={self.state.value}>"

    @property
    def state(self) -> SessionState:
        if self._key is not None:
            return SessionState.UNLOCKED
        if self._digest:
            return SessionState.LOCKED
        return SessionState.NO_MASTER_KEY

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    @property
    def remaining_attempts(self) -> int:
        return max(self.config.max_unlock_attempts - self._failed_attempts, 0)

    @property
    def locked_out(self) -> bool:
        return self.remaining_attempts == 0

    @property
    def session_key(self) -> SessionKey:
        """The live SessionKey.

        Raises:
            NotUnlockedError: If the session is not unlocked.
        """
        if self._key is None:
            raise NotUnlockedError(
                f"Vault is {self.state.value}; unlock it first"
            )
        return self._key

    async def refresh(self) -> SessionState:
        """Reload the stored hash and settle NO_MASTER_KEY / LOCKED."""
        self._digest = await self._profiles.get_master_key_hash(self.account_id)
        logger.debug(
            "Session refreshed for account=%s: %s", self.account_id, self.state.value,
        )
        return self.state

    def verify(self, candidate: str) -> bool:
        """Compare a candidate against the stored hash without changing state."""
        return bool(self._digest) and verify_secret(candidate, self._digest)

    def check_strength(self, secret: str) -> None:
        """Reject master keys shorter than the configured minimum."""
        if len(secret) < self.config.min_secret_length:
            raise ConfigurationError(
                f"Master key must be at least "
                f"{self.config.min_secret_length} characters"
            )

    async def set_up(self, secret: str) -> SessionKey:
        """Create the master key: persist its hash and unlock.

        Raises:
            SessionStateError: If a master key already exists.
            ConfigurationError: If the key is too short.
        """
        if self.state is not SessionState.NO_MASTER_KEY:
            raise SessionStateError(
                f"Cannot set up a master key while {self.state.value}"
            )
        self.check_strength(secret)
        digest = hash_secret(secret)
        await self._profiles.set_master_key_hash(self.account_id, digest)
        self._digest = digest
        self._key = SessionKey(self.account_id, secret)
        self._failed_attempts = 0
        logger.info("Master key set up for account=%s", self.account_id)
        return self._key

    def unlock(self, candidate: str) -> SessionKey:
        """Verify a candidate master key and hold it in memory.

        Raises:
            SessionStateError: If not LOCKED.
            TooManyAttempts: After ``max_unlock_attempts`` failures.
            VerificationFailure: On a wrong candidate; state stays LOCKED.
        """
        if self.state is not SessionState.LOCKED:
            raise SessionStateError(f"Cannot unlock while {self.state.value}")
        if self.locked_out:
            raise TooManyAttempts(
                "Too many failed attempts. Please try again later."
            )
        if not verify_secret(candidate, self._digest):
            self._failed_attempts += 1
            logger.warning(
                "Failed unlock attempt %d for account=%s",
                self._failed_attempts, self.account_id,
            )
            raise VerificationFailure(self._failed_attempts, self.remaining_attempts)
        self._key = SessionKey(self.account_id, candidate)
        self._failed_attempts = 0
        logger.info("Vault unlocked for account=%s", self.account_id)
        return self._key

    async def change_secret(self, current: str, new: str) -> SessionKey:
        """Replace the master key hash and the in-memory key.

        Records encrypted under the old key must be re-encrypted by the
        caller (see ``rotate_master_key``) before or after this call.

        Raises:
            NotUnlockedError: If not UNLOCKED.
            VerificationFailure: If ``current`` is wrong.
            ConfigurationError: If ``new`` is too short.
        """
        if self._key is None:
            raise NotUnlockedError("Unlock the vault before changing the master key")
        if not verify_secret(current, self._digest):
            raise VerificationFailure(self._failed_attempts, self.remaining_attempts)
        self.check_strength(new)
        digest = hash_secret(new)
        await self._profiles.set_master_key_hash(self.account_id, digest)
        self._digest = digest
        self._key.wipe()
        self._key = SessionKey(self.account_id, new)
        logger.info("Master key changed for account=%s", self.account_id)
        return self._key

    def lock(self) -> SessionState:
        """Wipe the in-memory key. Valid from any state."""
        if self._key is not None:
            self._key.wipe()
            self._key = None
            logger.info("Vault locked for account=%s", self.account_id)
        return self.state

    def reset_attempts(self) -> None:
        self._failed_attempts = 0

    def sign_out(self) -> SessionState:
        """Lock and forget the failed-attempt counter."""
        self.reset_attempts()
        return self.lock()
