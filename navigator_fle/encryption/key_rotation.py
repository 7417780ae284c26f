"""
Key Rotation — batch re-wrap of data keys under a new master key.

Unwraps every matching data key with the provider that wrapped it and wraps
it again with the target provider/master key. The raw data key does not
change, so no encrypted field has to be re-encrypted. Keys are processed in
batches; a failure on one key is logged and counted without stopping the
run, and re-running the operation is safe. Batches are read from the vault
one page at a time in key id order; ``resume_after`` restarts a run after
the last batch an earlier run logged as done.

Security Note:
    Raw data keys exist in memory only while each key is re-wrapped.
    Never log key material.
"""
import asyncio
import logging
from typing import Any, Optional

from bson.binary import Binary

from .exceptions import EncryptionError
from .keyvault import KeyVaultStore
from .kms import KmsProviders

logger = logging.getLogger("navigator.fle")


async def rewrap_many_data_key(
    store: KeyVaultStore,
    kms: KmsProviders,
    filter: Optional[dict] = None,
    provider: Optional[str] = None,
    master_key: Optional[dict] = None,
    batch_size: int = 100,
    resume_after: Optional[Binary] = None,
) -> dict:
    """Re-wrap all data keys matching ``filter``.

    Args:
        store: Key vault holding the keys.
        kms: Configured KMS providers; must include every source provider
            and the target provider.
        filter: Key vault query selecting the keys (default: all keys).
        provider: Target provider name, or None to keep each key's provider.
        master_key: Provider-specific master key params for ``provider``.
        batch_size: Number of keys read and re-wrapped concurrently per batch.
        resume_after: Skip keys up to and including this key id.

    Returns:
        Stats dict with keys: total, rewrapped, errors.

    Raises:
        ValueError: If ``master_key`` is given without ``provider``.
        KmsUnwrapError: If the target provider is not configured.
    """
    if master_key is not None and provider is None:
        raise ValueError("master_key requires provider")
    target = kms.get(provider) if provider is not None else None

    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    stats = {"total": 0, "rewrapped": 0, "errors": 0}

    logger.info(
        "Starting data key rewrap to provider=%s (batch_size=%d)",
        provider or "<unchanged>", batch_size,
    )

    async def rewrap(key: Any) -> None:
        source = kms.get(key.provider, key_id=key.id)
        raw = await source.unwrap(key.key_material, key.master_key, key_id=key.id)
        dest = target if provider is not None else source
        if provider is not None:
            new_master = dest.master_key_document(master_key)
        else:
            new_master = dict(key.master_key)
        wrapped = await dest.wrap(raw, new_master, key_id=key.id)
        await store.replace_key_material(key.id, wrapped, new_master)

    last_id = resume_after
    batch_num = 0
    while True:
        batch = await store.get_keys(filter, limit=batch_size, after=last_id)
        if not batch:
            break
        batch_num += 1
        logger.info("Processing batch %d (%d keys)", batch_num, len(batch))
        results = await asyncio.gather(
            *(rewrap(key) for key in batch), return_exceptions=True,
        )
        for key, result in zip(batch, results):
            stats["total"] += 1
            if isinstance(result, (EncryptionError, ValueError, OSError)):
                logger.error(
                    "Error rewrapping data key %s: %s", key.key_id, result,
                )
                stats["errors"] += 1
            elif isinstance(result, BaseException):
                raise result
            else:
                stats["rewrapped"] += 1
        last_id = batch[-1].id
        logger.info("Batch %d done, last key %s", batch_num, batch[-1].key_id)

    logger.info("Data key rewrap complete: %s", stats)
    return stats
