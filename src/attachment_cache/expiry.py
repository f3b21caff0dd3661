# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Time-based removal of cache entries."""

from __future__ import annotations

from datetime import datetime

from .logger import get_logger
from .models import CacheEntry
from .storage import PayloadStore

logger = get_logger("expiry")


class ExpirySweeper:
    """Remove every entry whose ``expires_at`` has been reached."""

    def __init__(self, store: PayloadStore):
        self._store = store

    async def sweep_expired(
        self, entries: dict[str, CacheEntry], now: datetime
    ) -> dict[str, CacheEntry]:
        """Return a copy of ``entries`` without expired records.

        Payloads of expired entries are deleted; a payload that cannot be
        deleted is logged and left behind as an orphan.
        """
        remaining = dict(entries)
        for key, entry in entries.items():
            if not entry.is_expired(now):
                continue
            try:
                await self._store.delete(entry.storage_path)
            except OSError as exc:
                logger.warning(f"Cannot delete expired payload {entry.filename}: {exc}")
            del remaining[key]

        expired = len(entries) - len(remaining)
        if expired:
            logger.info(f"Cleared {expired} expired cache entries")
        return remaining
