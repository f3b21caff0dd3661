# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Persistent, size-bounded cache for downloaded mail attachments.

This module provides the cache facade that platform adapters call into:

- ``AttachmentCache``: payloads on the local filesystem, a JSON index in the
  same directory, a total size bound, a fixed TTL and self-healing on
  startup and on read.
- ``NullAttachmentCache``: the degenerate cache for platforms without
  persistent storage. Every lookup misses and nothing is stored.

Entries are keyed by ``derive_key(filename, size, owner)`` so the same
attachment seen through different messages of one mailbox shares a slot.

Example:
    Using the cache in an attachment download flow::

        cache = AttachmentCache(storage_root="/var/cache/mail-attachments")
        await cache.initialize()

        entry = await cache.get("invoice.pdf", 2_000_000, "a@example.com")
        if entry is None:
            data = await download_attachment()
            entry = await cache.put(
                "invoice.pdf", "application/pdf", 2_000_000, "a@example.com", data
            )
        content = await cache.read_payload(entry)
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config_loader import CacheConfig
from .errors import (
    AttachmentCacheError,
    NotInitializedError,
    PayloadTooLargeError,
    PayloadWriteError,
    StorageUnavailableError,
)
from .eviction import EvictionPolicy
from .expiry import ExpirySweeper
from .file_types import detect_file_type
from .index import CacheIndex
from .integrity import IntegrityValidator
from .keys import derive_key
from .logger import get_logger
from .models import MIB, AttachmentDescriptor, CacheEntry, CacheStats, FileType
from .prometheus import CacheMetrics
from .storage import DEFAULT_IO_TIMEOUT, PayloadStore

DEFAULT_MAX_SIZE_BYTES = 100 * MIB
DEFAULT_TTL = timedelta(hours=36)
DEFAULT_SWEEP_INTERVAL = timedelta(minutes=5)
DEFAULT_MAX_INIT_ATTEMPTS = 3

Clock = Callable[[], datetime]

logger = get_logger("cache")


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _check_limits(max_size_bytes: int, ttl: timedelta) -> None:
    if max_size_bytes < 0:
        raise ValueError(f"max_size_bytes must not be negative, got {max_size_bytes}")
    if ttl < timedelta(0):
        raise ValueError(f"ttl must not be negative, got {ttl}")


@dataclass
class _KeyLock:
    """Per-key write lock and the number of writers holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class AttachmentCacheBase:
    """Contract shared by every attachment cache implementation.

    Attributes:
        persistent_storage: Whether ``put`` actually keeps the payload.
        platform: Short name reported in statistics.
        last_validation_removed: Entries dropped by the integrity check of
            the last successful ``initialize()``.
    """

    persistent_storage: bool = False
    platform: str = "base"
    last_validation_removed: int = 0

    async def initialize(self) -> None:
        raise NotImplementedError

    async def get(
        self, filename: str, size: int, owner_identity: str
    ) -> CacheEntry | None:
        """Return the cached entry for an attachment, or None on a miss."""
        raise NotImplementedError

    async def put(
        self,
        filename: str,
        mime_type: str,
        size: int,
        owner_identity: str,
        payload: bytes,
    ) -> CacheEntry:
        """Cache a fully downloaded attachment and return its entry."""
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def stats(self) -> CacheStats:
        raise NotImplementedError

    async def read_payload(self, entry: CacheEntry) -> bytes | None:
        """Return the cached bytes of an entry, or None if unavailable."""
        raise NotImplementedError

    async def sweep_expired(self) -> int:
        raise NotImplementedError

    async def validate(self) -> int:
        raise NotImplementedError

    async def get_or_download(
        self,
        descriptor: AttachmentDescriptor,
        owner_identity: str,
        download: Callable[[], Awaitable[bytes]],
    ) -> tuple[bytes, CacheEntry | None]:
        """Serve an attachment from cache, downloading it on a miss.

        The download itself is supplied by the caller. A failure to cache
        the downloaded bytes is logged and does not fail the call: the
        caller still gets the payload, only without a cache entry.

        Args:
            descriptor: Filename, MIME type and size of the attachment.
            owner_identity: Mailbox address the attachment belongs to.
            download: Coroutine factory returning the attachment bytes.

        Returns:
            Tuple of (payload, entry or None when the bytes are not cached).
        """
        entry = await self.get(descriptor.filename, descriptor.size, owner_identity)
        if entry is not None:
            payload = await self.read_payload(entry)
            if payload is not None:
                return payload, entry

        payload = await download()
        try:
            entry = await self.put(
                descriptor.filename,
                descriptor.mime_type,
                descriptor.size,
                owner_identity,
                payload,
            )
        except AttachmentCacheError as exc:
            logger.warning(f"Downloaded {descriptor.filename} but could not cache it: {exc}")
            return payload, None
        return payload, entry


class AttachmentCache(AttachmentCacheBase):
    """Filesystem-backed attachment cache.

    All index mutations (put, remove, clear, eviction, expiry sweeps and
    validation) run under one ``asyncio.Lock``. Payload writes happen
    outside it so different attachments can be written concurrently; a
    per-key lock keeps writes for the same attachment in call order.

    Attributes:
        max_size_bytes: Upper bound for the total payload size.
        ttl: Lifetime of an entry from its write time.
    """

    persistent_storage = True
    platform = "filesystem"

    def __init__(
        self,
        storage_root: str | Path,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        ttl: timedelta = DEFAULT_TTL,
        io_timeout: float = DEFAULT_IO_TIMEOUT,
        max_init_attempts: int = DEFAULT_MAX_INIT_ATTEMPTS,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL,
        metrics: CacheMetrics | None = None,
        clock: Clock | None = None,
    ):
        """Initialize the cache without touching the filesystem.

        Args:
            storage_root: Directory for the index and payload files.
            max_size_bytes: Upper bound for the total payload size.
            ttl: Lifetime of an entry from its write time.
            io_timeout: Seconds allowed for each filesystem call.
            max_init_attempts: Consecutive lazy initialization failures
                after which operations fail fast with NotInitializedError.
            sweep_interval: Minimum delay between expiry sweeps triggered
                by cache misses.
            metrics: Optional Prometheus metrics collector.
            clock: Callable returning the current UTC time.

        Raises:
            ValueError: If ``max_size_bytes`` or ``ttl`` is negative.
        """
        _check_limits(max_size_bytes, ttl)
        self.max_size_bytes = max_size_bytes
        self.ttl = ttl
        self._store = PayloadStore(storage_root, io_timeout=io_timeout)
        self._index = CacheIndex(self._store)
        self._validator = IntegrityValidator(self._store)
        self._eviction = EvictionPolicy(self._store)
        self._sweeper = ExpirySweeper(self._store)
        self._metrics = metrics
        self._clock = clock or utcnow
        self._max_init_attempts = max(1, max_init_attempts)
        self._sweep_interval = sweep_interval

        self._entries: dict[str, CacheEntry] = {}
        self._ready = False
        self._init_failures = 0
        self._last_init_error: BaseException | None = None
        self._last_sweep: datetime | None = None
        self._lock = asyncio.Lock()
        self._key_locks: dict[str, _KeyLock] = {}

    @classmethod
    def from_config(
        cls,
        config: CacheConfig,
        metrics: CacheMetrics | None = None,
        clock: Clock | None = None,
    ) -> AttachmentCache:
        return cls(
            storage_root=config.resolved_storage_root,
            max_size_bytes=config.max_size_bytes,
            ttl=config.ttl,
            io_timeout=config.io_timeout_seconds,
            max_init_attempts=config.max_init_attempts,
            sweep_interval=timedelta(seconds=config.sweep_interval_seconds),
            metrics=metrics,
            clock=clock,
        )

    @property
    def storage_root(self) -> Path:
        return self._store.root

    @property
    def index_path(self) -> Path:
        return self._index.path

    @property
    def is_initialized(self) -> bool:
        return self._ready

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the storage root, load and validate the index.

        Idempotent once it has succeeded. An explicit call always retries,
        even after lazy initialization has given up.

        Raises:
            StorageUnavailableError: If the storage root cannot be created
                or the cleaned index cannot be written.
        """
        async with self._lock:
            if self._ready:
                return
            logger.info(f"Initializing attachment cache in {self.storage_root}")
            try:
                try:
                    await self._store.ensure_root()
                except OSError as exc:
                    raise StorageUnavailableError(
                        f"Cannot create storage root {self.storage_root}: {exc}"
                    ) from exc

                entries = await self._index.load()
                cleaned = await self._validator.validate(entries)
                if len(cleaned) != len(entries):
                    await self._index.save(cleaned)
                    self._record_removed("integrity", len(entries) - len(cleaned))
            except StorageUnavailableError as exc:
                self._init_failures += 1
                self._last_init_error = exc
                logger.error(
                    f"Attachment cache initialization failed "
                    f"(attempt {self._init_failures}): {exc}"
                )
                raise

            self._set_entries(cleaned)
            self.last_validation_removed = len(entries) - len(cleaned)
            self._ready = True
            self._init_failures = 0
            self._last_init_error = None
            logger.info(f"Attachment cache initialized with {len(cleaned)} entries")

    async def _ensure_ready(self) -> None:
        if self._ready:
            return
        if self._init_failures >= self._max_init_attempts:
            raise NotInitializedError(
                f"Attachment cache not initialized after {self._init_failures} "
                f"failed attempts: {self._last_init_error}"
            ) from self._last_init_error
        await self.initialize()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get(
        self, filename: str, size: int, owner_identity: str
    ) -> CacheEntry | None:
        """Look up an attachment.

        Expired entries and entries whose payload has disappeared are
        removed and reported as misses. Storage failures are logged and
        reported as misses too.

        Args:
            filename: Original attachment filename.
            size: Attachment size as announced by the mail server.
            owner_identity: Mailbox address the attachment belongs to.

        Returns:
            The cache entry, or None.
        """
        try:
            key = derive_key(filename, size, owner_identity)
        except UnicodeEncodeError as exc:
            logger.warning(f"Cannot derive cache key for {filename!r}, treating as miss: {exc}")
            self._record_lookup(hit=False)
            return None
        try:
            await self._ensure_ready()
            entry = self._entries.get(key)
            if entry is None:
                logger.debug(f"Cache miss for: {filename} (key: {key[:8]}...)")
                self._record_lookup(hit=False)
                await self._maybe_sweep()
                return None

            if entry.is_expired(self._now()):
                logger.debug(f"Cache expired for: {filename}")
                await self._discard(entry, "expired")
                self._record_lookup(hit=False)
                return None

            if not await self._store.exists(entry.storage_path):
                logger.debug(f"Cache file missing for: {filename}")
                await self._discard(entry, "integrity")
                self._record_lookup(hit=False)
                return None
        except (AttachmentCacheError, OSError) as exc:
            logger.warning(f"Cache lookup failed for {filename}, treating as miss: {exc}")
            self._record_lookup(hit=False)
            return None

        logger.debug(f"Cache hit for: {filename}")
        self._record_lookup(hit=True)
        return entry

    async def read_payload(self, entry: CacheEntry) -> bytes | None:
        """Read the cached bytes of an entry.

        Returns:
            The payload, or None if it cannot be read or its size no longer
            matches the entry.
        """
        try:
            data = await self._store.read(entry.storage_path)
        except OSError as exc:
            logger.warning(f"Cannot read cached payload {entry.filename}: {exc}")
            return None
        if len(data) != entry.size_bytes:
            logger.warning(
                f"Cached payload {entry.filename} has {len(data)} bytes, "
                f"expected {entry.size_bytes}"
            )
            return None
        return data

    async def stats(self) -> CacheStats:
        """Compute statistics over the current index.

        Read-only: never initializes, evicts, expires or persists anything.
        Sizes are measured on disk; unreadable payloads count as 0 bytes.
        """
        if not self._ready:
            return self._empty_stats()

        entries = list(self._entries.values())
        now = self._now()
        total_size = 0
        expired = 0
        by_type: dict[FileType, int] = {}
        for entry in entries:
            try:
                total_size += await self._store.size(entry.storage_path) or 0
            except OSError as exc:
                logger.debug(f"Cannot measure {entry.filename} for stats: {exc}")
            if entry.is_expired(now):
                expired += 1
            by_type[entry.file_type] = by_type.get(entry.file_type, 0) + 1

        return CacheStats(
            total_files=len(entries),
            total_size_bytes=total_size,
            max_size_bytes=self.max_size_bytes,
            expired_files=expired,
            files_by_type=by_type,
            ttl_seconds=int(self.ttl.total_seconds()),
            is_initialized=True,
            platform=self.platform,
        )

    def _empty_stats(self) -> CacheStats:
        return CacheStats(
            max_size_bytes=self.max_size_bytes,
            ttl_seconds=int(self.ttl.total_seconds()),
            is_initialized=self._ready,
            platform=self.platform,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def put(
        self,
        filename: str,
        mime_type: str,
        size: int,
        owner_identity: str,
        payload: bytes,
    ) -> CacheEntry:
        """Store a downloaded attachment, replacing any previous copy.

        Args:
            filename: Original attachment filename.
            mime_type: Original attachment MIME type.
            size: Attachment size as announced by the mail server; part of
                the cache key.
            owner_identity: Mailbox address the attachment belongs to.
            payload: The complete attachment bytes.

        Returns:
            The new entry, durably backed by payload and index on disk.

        Raises:
            PayloadTooLargeError: If the payload alone exceeds the size bound.
            PayloadWriteError: If payload or index could not be persisted, or
                no key can be derived from filename and owner.
            NotInitializedError: If lazy initialization has given up.
            StorageUnavailableError: If initialization fails now.
        """
        data = bytes(payload)
        if len(data) > self.max_size_bytes:
            self._record_write(ok=False)
            raise PayloadTooLargeError(
                f"{filename!r} is {len(data)} bytes, cache limit is {self.max_size_bytes}"
            )
        try:
            key = derive_key(filename, size, owner_identity)
        except UnicodeEncodeError as exc:
            self._record_write(ok=False)
            raise PayloadWriteError(f"Cannot derive cache key for {filename!r}: {exc}") from exc
        await self._ensure_ready()

        if size != len(data):
            logger.debug(f"{filename}: announced size {size}, payload {len(data)} bytes")
        path = self._store.payload_path(key, filename, write_id=secrets.token_hex(4))

        async with self._key_lock(key):
            try:
                await self._store.write_atomic(path, data)
            except OSError as exc:
                self._record_write(ok=False)
                raise PayloadWriteError(f"Cannot write payload for {filename}: {exc}") from exc

            now = self._now()
            entry = CacheEntry(
                key=key,
                filename=filename,
                mime_type=mime_type,
                storage_path=str(path),
                size_bytes=len(data),
                cached_at=now,
                expires_at=now + self.ttl,
                file_type=detect_file_type(mime_type, filename),
            )

            async with self._lock:
                await self._commit_put(entry)

        logger.debug(f"Cached file: {filename} ({len(data)} bytes)")
        self._record_write(ok=True)
        return entry

    async def _commit_put(self, entry: CacheEntry) -> None:
        try:
            if not await self._store.exists(entry.storage_path):
                raise PayloadWriteError(f"Payload for {entry.filename} vanished before indexing")
        except PayloadWriteError:
            self._record_write(ok=False)
            raise
        except OSError as exc:
            self._record_write(ok=False)
            raise PayloadWriteError(f"Cannot verify payload for {entry.filename}: {exc}") from exc

        previous = self._entries.get(entry.key)
        entries = dict(self._entries)
        entries[entry.key] = entry
        try:
            await self._index.save(entries)
        except StorageUnavailableError as exc:
            await self._delete_payload(entry)
            self._record_write(ok=False)
            raise PayloadWriteError(f"Cannot index payload for {entry.filename}: {exc}") from exc
        self._set_entries(entries)

        if previous is not None and previous.storage_path != entry.storage_path:
            await self._delete_payload(previous)

        trimmed = await self._eviction.enforce_limit(
            entries, self.max_size_bytes, protected=(entry.key,)
        )
        if len(trimmed) != len(entries):
            self._set_entries(trimmed)
            self._record_removed("evicted", len(entries) - len(trimmed))
            try:
                await self._index.save(trimmed)
            except StorageUnavailableError as exc:
                logger.warning(f"Cannot persist index after eviction: {exc}")

    async def remove(self, key: str) -> None:
        """Delete an entry and its payload. No-op if the key is unknown."""
        await self._ensure_ready()
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            await self._delete_payload(entry)
            entries = dict(self._entries)
            del entries[key]
            self._set_entries(entries)
            self._record_removed("explicit")
            await self._index.save(entries)
        logger.debug(f"Removed cached file: {entry.filename}")

    async def clear(self) -> None:
        """Delete every payload under the storage root and the index.

        Entries whose payload cannot be deleted stay indexed, so the index
        never references a file that is gone.
        """
        await self._ensure_ready()
        async with self._lock:
            survivors: dict[str, CacheEntry] = {}
            for key, entry in self._entries.items():
                try:
                    await self._store.delete(entry.storage_path)
                except OSError as exc:
                    logger.warning(f"Cannot delete cached file {entry.filename}: {exc}")
                    survivors[key] = entry

            kept_paths = {Path(e.storage_path) for e in survivors.values()}
            try:
                stray_files = await self._store.list_files()
            except OSError as exc:
                logger.warning(f"Cannot list storage root for cleanup: {exc}")
                stray_files = []
            for path in stray_files:
                if path == self._index.path or path in kept_paths:
                    continue
                try:
                    await self._store.delete(path)
                except OSError as exc:
                    logger.warning(f"Cannot delete stray file {path.name}: {exc}")

            cleared = len(self._entries) - len(survivors)
            self._set_entries(survivors)
            self._record_removed("cleared", cleared)
            if survivors:
                await self._index.save(survivors)
            else:
                await self._index.delete()
        logger.info(f"Cleared attachment cache ({cleared} entries)")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        await self._ensure_ready()
        async with self._lock:
            now = self._now()
            remaining = await self._sweeper.sweep_expired(self._entries, now)
            self._last_sweep = now
            removed = len(self._entries) - len(remaining)
            if removed:
                self._set_entries(remaining)
                self._record_removed("expired", removed)
                await self._index.save(remaining)
        return removed

    async def validate(self) -> int:
        """Re-run the integrity validation on demand.

        Returns:
            Number of entries removed.
        """
        await self._ensure_ready()
        async with self._lock:
            cleaned = await self._validator.validate(self._entries)
            removed = len(self._entries) - len(cleaned)
            if removed:
                self._set_entries(cleaned)
                self._record_removed("integrity", removed)
                await self._index.save(cleaned)
        return removed

    async def _maybe_sweep(self) -> None:
        last = self._last_sweep
        if last is not None and self._now() - last < self._sweep_interval:
            return
        try:
            await self.sweep_expired()
        except (AttachmentCacheError, OSError) as exc:
            logger.warning(f"Expiry sweep after cache miss failed: {exc}")

    async def _discard(self, entry: CacheEntry, reason: str) -> None:
        async with self._lock:
            if self._entries.get(entry.key) is not entry:
                return
            await self._delete_payload(entry)
            entries = dict(self._entries)
            del entries[entry.key]
            self._set_entries(entries)
            self._record_removed(reason)
            await self._index.save(entries)

    async def _delete_payload(self, entry: CacheEntry) -> None:
        try:
            await self._store.delete(entry.storage_path)
        except OSError as exc:
            logger.warning(f"Cannot delete cached file {entry.filename}: {exc}")

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        slot = self._key_locks.get(key)
        if slot is None:
            slot = self._key_locks[key] = _KeyLock()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._key_locks[key]

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _set_entries(self, entries: dict[str, CacheEntry]) -> None:
        self._entries = entries
        if self._metrics:
            self._metrics.set_usage(
                len(entries), sum(e.size_bytes for e in entries.values())
            )

    def _record_lookup(self, hit: bool) -> None:
        if not self._metrics:
            return
        if hit:
            self._metrics.inc_hit()
        else:
            self._metrics.inc_miss()

    def _record_write(self, ok: bool) -> None:
        if not self._metrics:
            return
        if ok:
            self._metrics.inc_write()
        else:
            self._metrics.inc_write_error()

    def _record_removed(self, reason: str, count: int = 1) -> None:
        if self._metrics:
            self._metrics.inc_removed(reason, count)


class NullAttachmentCache(AttachmentCacheBase):
    """Cache for platforms without persistent storage.

    ``get`` always misses and ``put`` keeps nothing: it returns the entry
    that would have been cached, with an empty ``storage_path``, so callers
    can use the same code path on every platform.
    """

    persistent_storage = False
    platform = "null"

    def __init__(
        self,
        max_size_bytes: int = 0,
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock | None = None,
    ):
        _check_limits(max_size_bytes, ttl)
        self.max_size_bytes = max_size_bytes
        self.ttl = ttl
        self._clock = clock or utcnow
        self._ready = False

    @property
    def is_initialized(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        self._ready = True

    async def get(
        self, filename: str, size: int, owner_identity: str
    ) -> CacheEntry | None:
        return None

    async def put(
        self,
        filename: str,
        mime_type: str,
        size: int,
        owner_identity: str,
        payload: bytes,
    ) -> CacheEntry:
        try:
            key = derive_key(filename, size, owner_identity)
        except UnicodeEncodeError as exc:
            raise PayloadWriteError(f"Cannot derive cache key for {filename!r}: {exc}") from exc
        now = self._clock()
        return CacheEntry(
            key=key,
            filename=filename,
            mime_type=mime_type,
            storage_path="",
            size_bytes=len(payload),
            cached_at=now,
            expires_at=now + self.ttl,
            file_type=detect_file_type(mime_type, filename),
        )

    async def remove(self, key: str) -> None:
        return None

    async def clear(self) -> None:
        return None

    async def stats(self) -> CacheStats:
        return CacheStats(
            max_size_bytes=self.max_size_bytes,
            ttl_seconds=int(self.ttl.total_seconds()),
            is_initialized=self._ready,
            platform=self.platform,
        )

    async def read_payload(self, entry: CacheEntry) -> bytes | None:
        return None

    async def sweep_expired(self) -> int:
        return 0

    async def validate(self) -> int:
        return 0


def create_attachment_cache(
    config: CacheConfig,
    metrics: CacheMetrics | None = None,
    clock: Clock | None = None,
) -> AttachmentCacheBase:
    """Build the cache selected by ``config.backend``.

    Args:
        config: Cache settings.
        metrics: Optional Prometheus metrics for the filesystem cache.
        clock: Optional clock override, mainly for tests.

    Returns:
        An ``AttachmentCache`` for the filesystem backend, otherwise a
        ``NullAttachmentCache``.
    """
    if not config.persistent:
        return NullAttachmentCache(ttl=config.ttl, clock=clock)
    return AttachmentCache.from_config(config, metrics=metrics, clock=clock)
