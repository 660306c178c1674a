"""
Vault Crypto Core — Key derivation, envelope encryption and secret hashing.

Every encryption call produces a fresh envelope:
    PBKDF2-HMAC-SHA256(master_key, salt) → AES-256 → "<salt>:<iv>:<ciphertext>"

Two envelope flavours are understood:
- ``aesgcm``: 12-byte nonce, AES-256-GCM (authenticated, default)
- ``aescbc``: 16-byte IV, AES-256-CBC + PKCS7 (legacy, unauthenticated)

The flavour is recovered from the IV length on decryption, so envelopes
written under either backend stay readable.

Security Note:
    Never log plaintext, ciphertext, master keys or derived keys.
    A wrong master key and a corrupted envelope raise the same
    DecryptionError with the same message.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import os
from typing import Any, NamedTuple, Optional, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import DecryptionError
from .config import VaultConfig, get_config

logger = logging.getLogger("monokey.vault")

SALT_SIZE = 16
GCM_NONCE_SIZE = 12  # 96-bit nonce
CBC_IV_SIZE = 16  # one AES block
KEY_LENGTH = 32  # AES-256
BLOCK_SIZE_BITS = 128

Secret = Union[str, bytes]


def _secret_bytes(secret: Secret) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return bytes(secret)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class CipherEnvelope(NamedTuple):
    """Salt, IV and ciphertext produced by one encryption call."""

    salt: bytes
    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        """Return the wire form ``<saltHex>:<ivHex>:<ciphertextBase64>``."""
        return ":".join((
            self.salt.hex(),
            self.iv.hex(),
            base64.b64encode(self.ciphertext).decode("ascii"),
        ))

    @classmethod
    def parse(cls, data: str) -> "CipherEnvelope":
        """Parse the wire form back into an envelope.

        Raises:
            DecryptionError: If the string is not a well-formed envelope.
        """
        if not isinstance(data, str):
            raise DecryptionError()
        parts = data.split(":")
        if len(parts) != 3:
            raise DecryptionError()
        salt_hex, iv_hex, ct_b64 = parts
        try:
            salt = bytes.fromhex(salt_hex)
            iv = bytes.fromhex(iv_hex)
            ciphertext = base64.b64decode(ct_b64, validate=True)
        except (ValueError, binascii.Error) as err:
            raise DecryptionError() from err
        if not salt or len(iv) not in (GCM_NONCE_SIZE, CBC_IV_SIZE) or not ciphertext:
            raise DecryptionError()
        return cls(salt, iv, ciphertext)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(secret: Secret, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """Derive a 32-byte encryption key using PBKDF2-HMAC-SHA256.

    Args:
        secret: Master key (str or bytes).
        salt: Random per-envelope salt.
        iterations: PBKDF2 rounds; defaults to the configured value.

    Returns:
        32-byte derived key. Same (secret, salt, iterations) → same key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations or get_config().kdf_iterations,
    )
    return kdf.derive(_secret_bytes(secret))


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def encrypt(plaintext: str, secret: Secret, config: Optional[VaultConfig] = None) -> str:
    """Encrypt a string under the master key.

    Salt and IV are freshly random on every call, so two encryptions of the
    same plaintext under the same key never produce the same envelope.

    Args:
        plaintext: Text to encrypt.
        secret: Master key.
        config: Optional settings (backend, KDF rounds).

    Returns:
        Serialized envelope ``<saltHex>:<ivHex>:<ciphertextBase64>``.
    """
    config = config or get_config()
    salt = os.urandom(SALT_SIZE)
    key = derive_key(secret, salt, config.kdf_iterations)
    data = plaintext.encode("utf-8")
    if config.cipher_backend == "aescbc":
        iv = os.urandom(CBC_IV_SIZE)
        ct = _cbc_encrypt(key, iv, data)
    else:
        iv = os.urandom(GCM_NONCE_SIZE)
        ct = AESGCM(key).encrypt(iv, data, None)
    return CipherEnvelope(salt, iv, ct).serialize()


def decrypt(
    envelope: Union[str, CipherEnvelope],
    secret: Secret,
    config: Optional[VaultConfig] = None,
) -> str:
    """Decrypt an envelope produced by :func:`encrypt`.

    Args:
        envelope: Serialized envelope or a parsed CipherEnvelope.
        secret: Master key.
        config: Optional settings (KDF rounds).

    Returns:
        Decrypted plaintext.

    Raises:
        DecryptionError: Wrong master key or corrupted envelope.
    """
    config = config or get_config()
    if not isinstance(envelope, CipherEnvelope):
        envelope = CipherEnvelope.parse(envelope)
    key = derive_key(secret, envelope.salt, config.kdf_iterations)
    try:
        if len(envelope.iv) == CBC_IV_SIZE:
            data = _cbc_decrypt(key, envelope.iv, envelope.ciphertext)
        else:
            data = AESGCM(key).decrypt(envelope.iv, envelope.ciphertext, None)
        return data.decode("utf-8")
    except (InvalidTag, ValueError) as err:
        # UnicodeDecodeError is a ValueError too
        raise DecryptionError() from err


# ---------------------------------------------------------------------------
# Payload serialization
# ---------------------------------------------------------------------------

def encrypt_payload(payload: dict[str, Any], secret: Secret,
                    config: Optional[VaultConfig] = None) -> str:
    """JSON-serialize a dict and encrypt it."""
    return encrypt(orjson.dumps(payload).decode("utf-8"), secret, config)


def decrypt_payload(envelope: str, secret: Secret,
                    config: Optional[VaultConfig] = None) -> dict[str, Any]:
    """Decrypt an envelope holding a JSON object.

    Raises:
        DecryptionError: On a bad envelope or if the plaintext is not a
            JSON object.
    """
    plaintext = decrypt(envelope, secret, config)
    try:
        parsed = orjson.loads(plaintext)
    except orjson.JSONDecodeError as err:
        raise DecryptionError() from err
    if not isinstance(parsed, dict):
        raise DecryptionError()
    return parsed


# ---------------------------------------------------------------------------
# Verification hashes
# ---------------------------------------------------------------------------

def hash_secret(secret: Secret) -> str:
    """One-way SHA-256 hex digest of a secret, for verification only."""
    return hashlib.sha256(_secret_bytes(secret)).hexdigest()


def verify_secret(candidate: Secret, digest: str) -> bool:
    """Check a candidate secret against a stored digest (constant time)."""
    if not digest:
        return False
    return hmac.compare_digest(
        hash_secret(candidate).encode("ascii"),
        digest.strip().lower().encode("utf-8"),
    )
