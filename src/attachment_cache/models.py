# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for cache entries and cache statistics.

``CacheEntry`` is the persisted record, one per cached attachment. Its JSON
form uses camelCase names (``mimeType``, ``storagePath``, ``sizeBytes``,
``cachedAt``, ``expiresAt``, ``fileType``). Index files written by earlier
releases used ``id``, ``localPath``, ``size`` and ``type``; those names are
still accepted when loading.

``CacheStats`` is a read-only projection computed on demand and never
persisted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)

MIB = 1024 * 1024


class FileType(str, Enum):
    """Attachment categories used for cache statistics."""

    PDF = "pdf"
    IMAGE = "image"
    TEXT = "text"
    OFFICE = "office"
    VIDEO = "video"
    AUDIO = "audio"
    ARCHIVE = "archive"
    UNKNOWN = "unknown"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CacheEntry(BaseModel):
    """Metadata for one cached attachment.

    Attributes:
        key: Derived cache key, unique within the index.
        filename: Original attachment filename.
        mime_type: Original attachment MIME type.
        storage_path: Payload location on the backing store.
        size_bytes: Payload size recorded at write time.
        cached_at: Write time, used for eviction ordering.
        expires_at: ``cached_at + ttl``, fixed at write time.
        file_type: Category for statistics only.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: Annotated[
        str,
        Field(min_length=1, validation_alias=AliasChoices("key", "id"))
    ]
    filename: Annotated[str, Field(default="")]
    mime_type: Annotated[
        str,
        Field(
            default="",
            validation_alias=AliasChoices("mimeType", "mime_type"),
            serialization_alias="mimeType",
        )
    ]
    storage_path: Annotated[
        str,
        Field(
            default="",
            validation_alias=AliasChoices("storagePath", "storage_path", "localPath"),
            serialization_alias="storagePath",
        )
    ]
    size_bytes: Annotated[
        int,
        Field(
            ge=0,
            validation_alias=AliasChoices("sizeBytes", "size_bytes", "size"),
            serialization_alias="sizeBytes",
        )
    ]
    cached_at: Annotated[
        datetime,
        Field(
            validation_alias=AliasChoices("cachedAt", "cached_at"),
            serialization_alias="cachedAt",
        )
    ]
    expires_at: Annotated[
        datetime,
        Field(
            validation_alias=AliasChoices("expiresAt", "expires_at"),
            serialization_alias="expiresAt",
        )
    ]
    file_type: Annotated[
        FileType,
        Field(
            default=FileType.UNKNOWN,
            validation_alias=AliasChoices("fileType", "file_type", "type"),
            serialization_alias="fileType",
        )
    ]

    @field_validator("cached_at", "expires_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Store every timestamp as timezone-aware UTC."""
        return _as_utc(v)

    @field_validator("expires_at")
    @classmethod
    def expiry_not_before_write(cls, v: datetime, info) -> datetime:
        """Reject records that expire before they were written."""
        cached_at = info.data.get("cached_at")
        if cached_at is not None and v < cached_at:
            raise ValueError("expiresAt must not be earlier than cachedAt")
        return v

    @field_validator("file_type", mode="before")
    @classmethod
    def unknown_file_type(cls, v: Any) -> Any:
        """Map unrecognized file type names to UNKNOWN."""
        if isinstance(v, str) and v not in FileType._value2member_map_:
            return FileType.UNKNOWN
        return v

    def is_expired(self, now: datetime) -> bool:
        """Return True once ``now`` has reached ``expires_at``."""
        return _as_utc(now) >= self.expires_at

    def to_json(self) -> dict[str, Any]:
        """Serialize with the camelCase names used in the index file."""
        return self.model_dump(mode="json", by_alias=True)


class CacheStats(BaseModel):
    """Aggregate view over the cache index at call time."""

    model_config = ConfigDict(populate_by_name=True)

    total_files: int = Field(default=0, serialization_alias="totalFiles")
    total_size_bytes: int = Field(default=0, serialization_alias="totalSizeBytes")
    max_size_bytes: int = Field(default=0, serialization_alias="maxSizeBytes")
    expired_files: int = Field(default=0, serialization_alias="expiredFiles")
    files_by_type: dict[FileType, int] = Field(
        default_factory=dict, serialization_alias="filesByType"
    )
    ttl_seconds: int = Field(default=0, serialization_alias="ttlSeconds")
    is_initialized: bool = Field(default=False, serialization_alias="isInitialized")
    platform: str = "filesystem"

    @computed_field(alias="totalSizeMB")
    @property
    def total_size_mb(self) -> float:
        return round(self.total_size_bytes / MIB, 2)

    @computed_field(alias="maxSizeMB")
    @property
    def max_size_mb(self) -> float:
        return round(self.max_size_bytes / MIB, 2)

    @computed_field(alias="usagePercent")
    @property
    def usage_percent(self) -> int:
        if self.total_size_bytes <= 0 or self.max_size_bytes <= 0:
            return 0
        return round(self.total_size_bytes / self.max_size_bytes * 100)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AttachmentDescriptor(BaseModel):
    """Identity of an attachment as announced by the mail server."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str
    mime_type: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mimeType", "mime_type"),
        serialization_alias="mimeType",
    )
    size: int = Field(ge=0)


__all__ = ["AttachmentDescriptor", "CacheEntry", "CacheStats", "FileType", "MIB"]
