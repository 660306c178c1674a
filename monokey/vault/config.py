"""
Vault Configuration — Validated engine settings read from the environment.

Reads:
    VAULT_KDF_ITERATIONS = <int, PBKDF2 rounds, minimum 10000>
    VAULT_CIPHER_BACKEND = aesgcm | aescbc
    VAULT_MAX_UNLOCK_ATTEMPTS = <int>
    VAULT_MIN_SECRET_LENGTH = <int>

Security Note:
    Never log master keys or their hashes. Only log settings that are not
    secret (iteration counts, backend names).
"""
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import ConfigurationError

logger = logging.getLogger("monokey.vault")

MIN_KDF_ITERATIONS = 10_000
DEFAULT_KDF_ITERATIONS = 100_000
CIPHER_BACKENDS = ("aesgcm", "aescbc")


def _env_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to ``default`` when unset."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as err:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}"
        ) from err


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=MIN_KDF_ITERATIONS)
    cipher_backend: str = Field(default="aesgcm")
    max_unlock_attempts: int = Field(default=3, ge=1, le=20)
    min_secret_length: int = Field(default=8, ge=1, le=1024)

    model_config = {"frozen": True}

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in CIPHER_BACKENDS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.

        Raises:
            ConfigurationError: If a variable is malformed or out of range.
        """
        try:
            config = cls(
                kdf_iterations=_env_int(
                    "VAULT_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS
                ),
                cipher_backend=os.environ.get("VAULT_CIPHER_BACKEND", "aesgcm"),
                max_unlock_attempts=_env_int("VAULT_MAX_UNLOCK_ATTEMPTS", 3),
                min_secret_length=_env_int("VAULT_MIN_SECRET_LENGTH", 8),
            )
        except ValidationError as err:
            raise ConfigurationError(str(err)) from err
        logger.debug(
            "Vault config: backend=%s kdf_iterations=%d",
            config.cipher_backend, config.kdf_iterations,
        )
        return config


_default_config: Optional[VaultConfig] = None


def get_config() -> VaultConfig:
    """Return the process-wide config, resolved once from the environment."""
    global _default_config
    if _default_config is None:
        _default_config = VaultConfig.from_env()
    return _default_config


def reset_config() -> None:
    """Forget the cached config so the next ``get_config()`` re-reads env."""
    global _default_config
    _default_config = None
