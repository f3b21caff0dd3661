"""Tests for cache models and file type detection."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from attachment_cache.file_types import (
    detect_file_type,
    detect_from_filename,
    guess_mime_type,
)
from attachment_cache.models import MIB, CacheEntry, CacheStats, FileType

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_entry(**overrides) -> CacheEntry:
    values = {
        "key": "k" * 64,
        "filename": "invoice.pdf",
        "mime_type": "application/pdf",
        "storage_path": "/tmp/cache/x_invoice.pdf",
        "size_bytes": 10,
        "cached_at": NOW,
        "expires_at": NOW + timedelta(hours=36),
        "file_type": FileType.PDF,
    }
    values.update(overrides)
    return CacheEntry(**values)


class TestCacheEntry:
    """Tests for CacheEntry serialization and validation."""

    def test_json_uses_camel_case_names(self):
        data = make_entry().to_json()
        assert set(data) == {
            "key", "filename", "mimeType", "storagePath", "sizeBytes",
            "cachedAt", "expiresAt", "fileType",
        }
        assert data["fileType"] == "pdf"
        assert data["sizeBytes"] == 10

    def test_json_round_trip(self):
        entry = make_entry()
        assert CacheEntry.model_validate(entry.to_json()) == entry

    def test_legacy_field_names_are_accepted(self):
        entry = CacheEntry.model_validate({
            "id": "abc",
            "filename": "photo.png",
            "mimeType": "image/png",
            "localPath": "/tmp/abc_photo.png",
            "size": 42,
            "cachedAt": "2025-03-01T12:00:00.000",
            "expiresAt": "2025-03-03T00:00:00.000",
            "type": "image",
        })
        assert entry.key == "abc"
        assert entry.storage_path == "/tmp/abc_photo.png"
        assert entry.size_bytes == 42
        assert entry.file_type is FileType.IMAGE

    def test_naive_timestamps_are_read_as_utc(self):
        entry = make_entry(cached_at=datetime(2025, 3, 1, 12, 0), expires_at=datetime(2025, 3, 2))
        assert entry.cached_at.tzinfo is not None
        assert entry.cached_at == NOW

    def test_unknown_file_type_name_maps_to_unknown(self):
        data = make_entry().to_json()
        data["fileType"] = "hologram"
        assert CacheEntry.model_validate(data).file_type is FileType.UNKNOWN

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            make_entry(size_bytes=-1)

    def test_expiry_before_write_rejected(self):
        with pytest.raises(ValidationError):
            make_entry(expires_at=NOW - timedelta(seconds=1))

    def test_is_expired_boundary(self):
        entry = make_entry()
        assert not entry.is_expired(entry.expires_at - timedelta(seconds=1))
        assert entry.is_expired(entry.expires_at)

    def test_entries_are_immutable(self):
        entry = make_entry()
        with pytest.raises(ValidationError):
            entry.size_bytes = 99


class TestCacheStats:
    """Tests for CacheStats derived values."""

    def test_derived_values(self):
        stats = CacheStats(total_files=2, total_size_bytes=25 * MIB, max_size_bytes=100 * MIB)
        assert stats.total_size_mb == 25.0
        assert stats.max_size_mb == 100.0
        assert stats.usage_percent == 25

    def test_json_has_camel_case_and_type_counts(self):
        stats = CacheStats(
            total_files=3,
            files_by_type={FileType.PDF: 2, FileType.IMAGE: 1},
            ttl_seconds=36 * 3600,
        )
        data = stats.to_json()
        assert data["totalFiles"] == 3
        assert data["filesByType"] == {"pdf": 2, "image": 1}
        assert data["ttlSeconds"] == 129600
        assert data["usagePercent"] == 0


class TestFileTypes:
    """Tests for file type detection."""

    @pytest.mark.parametrize(
        ("mime", "expected"),
        [
            ("image/jpeg", FileType.IMAGE),
            ("application/pdf", FileType.PDF),
            ("text/plain", FileType.TEXT),
            ("video/mp4", FileType.VIDEO),
            ("audio/mpeg", FileType.AUDIO),
            ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", FileType.OFFICE),
            ("application/msword", FileType.OFFICE),
            ("application/zip", FileType.ARCHIVE),
            ("application/x-7z-compressed", FileType.ARCHIVE),
            (" IMAGE/PNG ", FileType.IMAGE),
        ],
    )
    def test_mime_type_detection(self, mime, expected):
        assert detect_file_type(mime) is expected

    def test_generic_mime_falls_back_to_extension(self):
        assert detect_file_type("application/octet-stream", "scan.PDF") is FileType.PDF
        assert detect_file_type("", "backup.tar") is FileType.ARCHIVE
        assert detect_file_type(None, "notes.md") is FileType.TEXT

    def test_unrecognized_is_unknown(self):
        assert detect_file_type("application/octet-stream", "blob.bin") is FileType.UNKNOWN
        assert detect_from_filename("no_extension") is FileType.UNKNOWN

    def test_guess_mime_type(self):
        assert guess_mime_type("invoice.pdf") == "application/pdf"
        assert guess_mime_type("mystery.zzz") == "application/octet-stream"
