# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Cache key derivation for attachments.

The key identifies an attachment by what stays stable across message
representations: filename, byte size and the owning mailbox. Transport
identifiers (message-local attachment ids) are left out so the same
attachment reached through a different message still hits the same slot.

Two different attachments sharing filename, size and owner therefore map
to the same key and overwrite each other.
"""

from __future__ import annotations

import hashlib

from .logger import get_logger

logger = get_logger("keys")

KEY_LENGTH = 64


def derive_key(filename: str, size_hint: int, owner_identity: str) -> str:
    """Derive the cache key for an attachment.

    Args:
        filename: Original attachment filename.
        size_hint: Attachment size in bytes as announced by the mail server.
        owner_identity: Mailbox address the attachment belongs to.

    Returns:
        Lowercase hex SHA-256 of ``"{filename}_{size_hint}_{owner_identity}"``.

    Raises:
        UnicodeEncodeError: If filename or owner contain lone surrogates,
            as produced by ``surrogateescape`` header decoding.
    """
    if not filename or not owner_identity:
        logger.debug(
            f"Deriving key with empty filename or owner (filename={filename!r}, "
            f"owner={owner_identity!r}); unrelated attachments may collide"
        )
    data = f"{filename}_{size_hint}_{owner_identity}".encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def is_valid_key(key: str) -> bool:
    """Check whether a string has the shape of a derived key."""
    if len(key) != KEY_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in key)
