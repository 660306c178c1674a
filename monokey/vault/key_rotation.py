"""
Vault Key Rotation — Re-encryption of every record when the master key changes.

Each record is decrypted under the old master key and sealed again under the
new one. Failures are isolated per record: a record that cannot be read under
the old key is left untouched and counted as an error.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import asyncio
import logging

from ..exceptions import CredentialNotFound, DecryptionError
from .session import SessionKey
from .store import VaultStore

logger = logging.getLogger("monokey.vault")


async def rotate_master_key(
    store: VaultStore,
    old_key: SessionKey,
    new_key: SessionKey,
) -> dict:
    """Re-encrypt all records of ``store`` from ``old_key`` to ``new_key``.

    Args:
        store: Remote or local store holding the records.
        old_key: Session key the records are currently sealed with.
        new_key: Session key to seal them with.

    Returns:
        Stats dict with keys: total, rotated, errors.
    """
    stats = {"total": 0, "rotated": 0, "errors": 0}

    logger.info(
        "Starting master key rotation for %s store, account=%s",
        store.kind, store.account_id,
    )

    for record in await store.records():
        stats["total"] += 1
        try:
            secrets_ = await asyncio.to_thread(store.unseal, record, old_key)
            encrypted_data = await asyncio.to_thread(store.seal, secrets_, new_key)
            await store.replace_envelope(record.id, encrypted_data)
            stats["rotated"] += 1
        except (DecryptionError, CredentialNotFound) as err:
            logger.error(
                "Error rotating credential id=%s: %s", record.id, err,
            )
            stats["errors"] += 1

    logger.info("Master key rotation complete: %s", stats)
    return stats
