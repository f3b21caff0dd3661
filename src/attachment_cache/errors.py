# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised by the attachment cache.

Read-path operations (``get``, ``stats``, ``read_payload``) never let these
escape; they are logged and turned into misses. Write-path operations
(``put``) propagate them so callers never believe an attachment is cached
when it is not.
"""


class AttachmentCacheError(Exception):
    """Base class for every attachment cache failure."""


class NotInitializedError(AttachmentCacheError, RuntimeError):
    """The cache was used before a successful ``initialize()``.

    Raised once lazy initialization has failed ``max_init_attempts`` times
    in a row. An explicit ``initialize()`` call retries.
    """


class StorageUnavailableError(AttachmentCacheError, OSError):
    """The storage root or the index file cannot be created or written."""


class IndexCorruptError(AttachmentCacheError, ValueError):
    """The index file exists but cannot be parsed.

    Only raised internally by the index loader, which recovers by starting
    from an empty index.
    """


class IntegrityMismatchError(AttachmentCacheError, ValueError):
    """A cache entry disagrees with the payload on disk."""

    def __init__(self, key: str, reason: str, payload_missing: bool = False):
        super().__init__(f"Integrity mismatch for {key[:8]}...: {reason}")
        self.key = key
        self.reason = reason
        self.payload_missing = payload_missing


class PayloadWriteError(AttachmentCacheError, OSError):
    """The attachment payload could not be persisted."""


class PayloadTooLargeError(PayloadWriteError):
    """The payload alone exceeds the configured cache size limit."""


__all__ = [
    "AttachmentCacheError",
    "IndexCorruptError",
    "IntegrityMismatchError",
    "NotInitializedError",
    "PayloadTooLargeError",
    "PayloadWriteError",
    "StorageUnavailableError",
]
