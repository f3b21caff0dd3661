# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable index of cached attachments.

The index is a single JSON object mapping cache key to the entry's JSON
form, stored as ``cache_index.json`` in the storage root. It is always
read and written as a whole; the eviction policy keeps it in the hundreds
of entries, so partial updates are not worth their complexity.

Saving writes a temporary sibling and atomically replaces the canonical
file, so a crash mid-write leaves either the old or the new index, never a
truncated one.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import IndexCorruptError, StorageUnavailableError
from .logger import get_logger
from .models import CacheEntry
from .storage import PayloadStore

INDEX_FILENAME = "cache_index.json"

logger = get_logger("index")


class CacheIndex:
    """Load and save the key -> CacheEntry mapping.

    Attributes:
        path: Location of the index file.
    """

    def __init__(self, store: PayloadStore, filename: str = INDEX_FILENAME):
        self._store = store
        self.path: Path = store.root / filename

    async def load(self) -> dict[str, CacheEntry]:
        """Read the index from disk.

        Returns:
            The mapping of key to entry. Empty when the index file does not
            exist, cannot be read or cannot be parsed; individual records
            that fail validation are dropped.
        """
        try:
            raw = await self._store.read(self.path)
        except FileNotFoundError:
            logger.debug("Cache index not found, starting with an empty index")
            return {}
        except OSError as exc:
            logger.error(f"Failed to read cache index {self.path}: {exc}")
            return {}

        try:
            entries = self.parse(raw)
        except IndexCorruptError as exc:
            logger.error(f"Discarding corrupt cache index {self.path}: {exc}")
            return {}

        logger.debug(f"Loaded cache index with {len(entries)} entries")
        return entries

    @staticmethod
    def parse(raw: bytes) -> dict[str, CacheEntry]:
        """Decode index file contents.

        Raises:
            IndexCorruptError: If the content is not a JSON object.
        """
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
            raise IndexCorruptError(str(exc)) from exc
        if not isinstance(document, dict):
            raise IndexCorruptError(
                f"expected a JSON object, got {type(document).__name__}"
            )

        entries: dict[str, CacheEntry] = {}
        for key, record in document.items():
            if not isinstance(record, dict):
                logger.warning(f"Dropping malformed index record {key[:8]}...")
                continue
            try:
                entry = CacheEntry.model_validate(record)
            except ValidationError as exc:
                logger.warning(
                    f"Dropping invalid index record {key[:8]}...: "
                    f"{exc.error_count()} validation error(s)"
                )
                continue
            if entry.key != key:
                entry = entry.model_copy(update={"key": key})
            entries[key] = entry
        return entries

    @staticmethod
    def serialize(entries: dict[str, CacheEntry]) -> bytes:
        document: dict[str, Any] = {key: entry.to_json() for key, entry in entries.items()}
        return json.dumps(document, indent=None, separators=(",", ":")).encode("utf-8")

    async def save(self, entries: dict[str, CacheEntry]) -> None:
        """Persist the whole mapping atomically.

        Raises:
            StorageUnavailableError: If the index cannot be written.
        """
        data = self.serialize(entries)
        try:
            await self._store.write_atomic(self.path, data)
        except OSError as exc:
            logger.error(f"Failed to save cache index {self.path}: {exc}")
            raise StorageUnavailableError(f"Cannot write cache index: {exc}") from exc
        logger.debug(f"Saved cache index with {len(entries)} entries")

    async def delete(self) -> None:
        """Remove the index file if present."""
        try:
            await self._store.delete(self.path)
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot delete cache index: {exc}") from exc
