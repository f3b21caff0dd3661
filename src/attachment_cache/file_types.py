# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""File type classification for cached attachments.

The file type is only used for statistics. MIME type is consulted first;
the filename extension is the fallback when the MIME type is missing or
generic (``application/octet-stream`` and friends).
"""

from __future__ import annotations

import mimetypes
from pathlib import PurePosixPath

from .models import FileType

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg", ".tiff",
    ".tif", ".ico", ".heic", ".heif",
})
TEXT_EXTENSIONS = frozenset({
    ".txt", ".log", ".csv", ".json", ".xml", ".yaml", ".yml", ".md",
    ".markdown", ".rtf", ".html", ".htm", ".css", ".js", ".py", ".java",
    ".cpp", ".c", ".h", ".swift", ".kt", ".dart",
})
VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v",
    ".3gp", ".3g2", ".mpg", ".mpeg", ".mp2", ".mpe", ".mpv", ".m2v",
    ".f4v", ".f4p", ".f4a", ".f4b",
})
AUDIO_EXTENSIONS = frozenset({
    ".mp3", ".wav", ".flac", ".aac", ".ogg", ".wma", ".m4a", ".opus",
    ".ape", ".aiff", ".au", ".ra",
})
OFFICE_EXTENSIONS = frozenset({
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods",
    ".odp", ".pages", ".numbers", ".key",
})
ARCHIVE_EXTENSIONS = frozenset({
    ".zip", ".rar", ".7z", ".tar", ".gz", ".bz2", ".xz", ".cab", ".iso",
    ".dmg",
})

_EXTENSION_TABLE: tuple[tuple[frozenset[str], FileType], ...] = (
    (IMAGE_EXTENSIONS, FileType.IMAGE),
    (frozenset({".pdf"}), FileType.PDF),
    (TEXT_EXTENSIONS, FileType.TEXT),
    (VIDEO_EXTENSIONS, FileType.VIDEO),
    (AUDIO_EXTENSIONS, FileType.AUDIO),
    (OFFICE_EXTENSIONS, FileType.OFFICE),
    (ARCHIVE_EXTENSIONS, FileType.ARCHIVE),
)

_OFFICE_MARKERS = (
    "word", "excel", "powerpoint", "spreadsheet", "presentation",
    "document", "msword", "ms-excel", "ms-powerpoint", "officedocument",
)
_ARCHIVE_MARKERS = ("zip", "rar", "tar", "gzip", "7z", "compress")
_GENERIC_MIME_TYPES = frozenset({
    "", "application/octet-stream", "application/binary", "application/unknown",
})


def detect_from_mime_type(mime_type: str) -> FileType:
    """Classify a MIME type, returning UNKNOWN when it says nothing useful."""
    mime = (mime_type or "").strip().lower()
    if mime.startswith("image/"):
        return FileType.IMAGE
    if "pdf" in mime:
        return FileType.PDF
    if mime.startswith("text/"):
        return FileType.TEXT
    if mime.startswith("video/"):
        return FileType.VIDEO
    if mime.startswith("audio/"):
        return FileType.AUDIO
    if any(marker in mime for marker in _OFFICE_MARKERS):
        return FileType.OFFICE
    if any(marker in mime for marker in _ARCHIVE_MARKERS):
        return FileType.ARCHIVE
    return FileType.UNKNOWN


def detect_from_filename(filename: str) -> FileType:
    """Classify a filename by its extension."""
    extension = PurePosixPath((filename or "").replace("\\", "/")).suffix.lower()
    for extensions, file_type in _EXTENSION_TABLE:
        if extension in extensions:
            return file_type
    return FileType.UNKNOWN


def detect_file_type(mime_type: str | None, filename: str | None = None) -> FileType:
    """Classify an attachment from its MIME type and filename.

    Args:
        mime_type: Declared MIME type, possibly empty or generic.
        filename: Original filename, used when the MIME type is not
            conclusive.

    Returns:
        The detected ``FileType``, ``FileType.UNKNOWN`` if neither source
        is recognized.
    """
    detected = detect_from_mime_type(mime_type or "")
    if detected is not FileType.UNKNOWN:
        return detected
    if filename:
        detected = detect_from_filename(filename)
        if detected is not FileType.UNKNOWN:
            return detected
        if (mime_type or "").strip().lower() in _GENERIC_MIME_TYPES:
            guessed, _ = mimetypes.guess_type(filename)
            if guessed:
                return detect_from_mime_type(guessed)
    return FileType.UNKNOWN


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from a filename, ``application/octet-stream`` if unknown."""
    mime, _ = mimetypes.guess_type(filename)
    return mime or "application/octet-stream"
