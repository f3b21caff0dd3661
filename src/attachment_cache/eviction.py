# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Size-bound enforcement for the attachment cache.

Entries are evicted oldest ``cached_at`` first. This is write-time order:
reads never refresh an entry, so a frequently opened attachment is evicted
as soon as it is the oldest write. Entries with equal ``cached_at`` are
ordered by key so the outcome is deterministic for a given index.

Sizes are re-measured on disk rather than trusted from the index, so drift
between recorded and actual sizes cannot let the cache grow past its bound.
"""

from __future__ import annotations

from collections.abc import Iterable

from .logger import get_logger
from .models import MIB, CacheEntry
from .storage import PayloadStore

logger = get_logger("eviction")


class EvictionPolicy:
    """Delete the oldest entries until total size fits the limit."""

    def __init__(self, store: PayloadStore):
        self._store = store

    async def measure(self, entry: CacheEntry) -> int:
        """Actual payload size on disk; 0 when missing or unreadable."""
        try:
            return await self._store.size(entry.storage_path) or 0
        except OSError as exc:
            logger.warning(f"Cannot measure {entry.filename}, counting as 0 bytes: {exc}")
            return 0

    async def enforce_limit(
        self,
        entries: dict[str, CacheEntry],
        max_size_bytes: int,
        protected: Iterable[str] = (),
    ) -> dict[str, CacheEntry]:
        """Return a copy of ``entries`` that fits within ``max_size_bytes``.

        Args:
            entries: The current index mapping. Not modified.
            max_size_bytes: Upper bound for the total payload size.
            protected: Keys that must survive this pass, typically the
                entry that was just written.

        Returns:
            The mapping after eviction. Evicted payloads are deleted.
        """
        if not entries:
            return {}

        sizes = {key: await self.measure(entry) for key, entry in entries.items()}
        total_size = sum(sizes.values())
        if total_size <= max_size_bytes:
            return dict(entries)

        logger.info(
            f"Cache size limit exceeded ({total_size / MIB:.2f}MB > "
            f"{max_size_bytes / MIB:.2f}MB), cleaning up..."
        )

        keep = set(protected)
        remaining = dict(entries)
        ordered = sorted(entries.values(), key=lambda e: (e.cached_at, e.key))
        for entry in ordered:
            if total_size <= max_size_bytes:
                break
            if entry.key in keep:
                continue
            try:
                await self._store.delete(entry.storage_path)
            except OSError as exc:
                logger.warning(f"Cannot delete evicted payload {entry.filename}: {exc}")
            total_size -= sizes[entry.key]
            del remaining[entry.key]
            logger.debug(f"Evicted cached file: {entry.filename}")

        evicted = len(entries) - len(remaining)
        logger.info(
            f"Cache cleanup completed: evicted {evicted} entries, "
            f"{total_size / MIB:.2f}MB in use"
        )
        return remaining
