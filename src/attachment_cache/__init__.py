# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded, self-healing local cache for downloaded mail attachments.

Components:
    AttachmentCache: Filesystem cache with size bound, TTL and integrity checks.
    NullAttachmentCache: Always-miss cache for platforms without storage.
    CacheConfig: Process-wide settings, see ``load_cache_config``.

Features:
    - Stable keys from filename, size and owner mailbox
    - Atomic JSON index next to the payload files
    - Oldest-write-first eviction to a configurable size limit
    - Fixed TTL expiry checked on every read
    - Startup reconciliation of index and payload files
    - Prometheus metrics, FastAPI admin API and a click CLI

Example::

    from attachment_cache import AttachmentCache

    cache = AttachmentCache(storage_root="/var/cache/mail-attachments")
    await cache.initialize()
    entry = await cache.get("invoice.pdf", 2_000_000, "a@example.com")
"""

from .cache import (
    AttachmentCache,
    AttachmentCacheBase,
    NullAttachmentCache,
    create_attachment_cache,
)
from .config_loader import CacheConfig, load_cache_config
from .errors import (
    AttachmentCacheError,
    IndexCorruptError,
    IntegrityMismatchError,
    NotInitializedError,
    PayloadTooLargeError,
    PayloadWriteError,
    StorageUnavailableError,
)
from .keys import derive_key
from .models import AttachmentDescriptor, CacheEntry, CacheStats, FileType

__all__ = [
    "AttachmentCache",
    "AttachmentCacheBase",
    "AttachmentCacheError",
    "AttachmentDescriptor",
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "FileType",
    "IndexCorruptError",
    "IntegrityMismatchError",
    "NotInitializedError",
    "NullAttachmentCache",
    "PayloadTooLargeError",
    "PayloadWriteError",
    "StorageUnavailableError",
    "create_attachment_cache",
    "derive_key",
    "load_cache_config",
]
