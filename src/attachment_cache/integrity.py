# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Startup reconciliation between the index and the payload files.

The validator drops index entries whose payload is missing or whose size
on disk differs from the recorded size. An entry that cannot be checked
right now (permission error, I/O timeout) is kept and left for the next
pass rather than failing the whole validation.

Payload files with no index entry are not touched here.
"""

from __future__ import annotations

from .errors import IntegrityMismatchError
from .logger import get_logger
from .models import CacheEntry
from .storage import PayloadStore

logger = get_logger("integrity")


class IntegrityValidator:
    """Full O(n) scan of the index against the backing store."""

    def __init__(self, store: PayloadStore):
        self._store = store

    async def check(self, entry: CacheEntry) -> None:
        """Verify a single entry.

        Raises:
            IntegrityMismatchError: If the payload is missing or its size
                differs from ``entry.size_bytes``.
            OSError: If the payload cannot be inspected.
        """
        actual = await self._store.size(entry.storage_path)
        if actual is None:
            raise IntegrityMismatchError(entry.key, "file not found", payload_missing=True)
        if actual != entry.size_bytes:
            raise IntegrityMismatchError(
                entry.key,
                f"size mismatch: expected {entry.size_bytes}, got {actual}",
            )

    async def validate(self, entries: dict[str, CacheEntry]) -> dict[str, CacheEntry]:
        """Return a copy of ``entries`` without the defective records.

        Args:
            entries: The loaded index mapping. Not modified.

        Returns:
            The cleaned mapping. Payloads of dropped entries are deleted.
        """
        cleaned = dict(entries)
        for key, entry in entries.items():
            try:
                await self.check(entry)
            except IntegrityMismatchError as exc:
                if not exc.payload_missing:
                    try:
                        await self._store.delete(entry.storage_path)
                    except OSError as delete_exc:
                        logger.warning(
                            f"Cannot delete mismatched payload for {entry.filename}, "
                            f"retrying on next validation: {delete_exc}"
                        )
                        continue
                logger.warning(f"Removing invalid cache entry {entry.filename}: {exc.reason}")
                del cleaned[key]
            except OSError as exc:
                logger.warning(
                    f"Cannot check cache entry {entry.filename}, "
                    f"retrying on next validation: {exc}"
                )

        removed = len(entries) - len(cleaned)
        if removed:
            logger.info(f"Cleaned up {removed} invalid cache entries")
        return cleaned
