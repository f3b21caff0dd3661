# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Filesystem primitives for the storage root.

Every blocking call runs in a worker thread via ``asyncio.to_thread`` and is
bounded by ``asyncio.wait_for`` so a stuck disk cannot freeze the event
loop forever. A timeout surfaces as ``TimeoutError``, which is an
``OSError`` and is handled like any other I/O failure by the callers.

Payload files live directly under the root and are named
``<key>_<write id>_<safe filename>``. Writes go to a temporary sibling first and are
moved into place with ``os.replace``, so readers never observe a partially
written payload.
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

T = TypeVar("T")

DEFAULT_IO_TIMEOUT = 5.0
MAX_FILENAME_CHARS = 100
TEMP_SUFFIX = ".tmp"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(filename: str) -> str:
    """Reduce an attachment filename to a filesystem-safe basename.

    Args:
        filename: Original filename, possibly containing path separators
            or characters that are invalid on some filesystems.

    Returns:
        The basename with unsafe characters replaced by ``_``, truncated to
        ``MAX_FILENAME_CHARS``; ``"file"`` when nothing usable remains.
    """
    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_CHARS.sub("_", base).strip(".")
    if len(cleaned) > MAX_FILENAME_CHARS:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and 0 < len(ext) < 16:
            cleaned = stem[: MAX_FILENAME_CHARS - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:MAX_FILENAME_CHARS]
    return cleaned or "file"


class PayloadStore:
    """Bounded-timeout file operations scoped to one storage root.

    Attributes:
        root: Directory holding the index file and the payload files.
        io_timeout: Seconds allowed for each blocking filesystem call.
    """

    def __init__(self, root: str | Path, io_timeout: float = DEFAULT_IO_TIMEOUT):
        self.root = Path(root)
        self.io_timeout = io_timeout

    async def _run(self, func: Callable[..., T], *args) -> T:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), self.io_timeout)

    def payload_path(self, key: str, filename: str, write_id: str | None = None) -> Path:
        """Return the payload location for a key and original filename.

        ``write_id`` makes every write land on a fresh path, so replacing
        an entry never touches the file a previous entry still points to.
        """
        if write_id:
            return self.root / f"{key}_{write_id}_{safe_filename(filename)}"
        return self.root / f"{key}_{safe_filename(filename)}"

    async def ensure_root(self) -> None:
        """Create the storage root (and parents) if missing."""
        await self._run(self.root.mkdir, 0o755, True, True)

    async def write_atomic(self, path: str | Path, data: bytes) -> None:
        """Write ``data`` to ``path`` through a temp file and ``os.replace``."""
        await self._run(_write_atomic, Path(path), data)

    async def read(self, path: str | Path) -> bytes:
        """Read a whole file. Raises ``FileNotFoundError`` when absent."""
        return await self._run(Path(path).read_bytes)

    async def size(self, path: str | Path) -> int | None:
        """Return the file size in bytes, or None when the file does not exist.

        Other ``OSError`` conditions (permissions, timeouts) propagate so
        callers can tell "missing" apart from "cannot tell right now".
        """
        return await self._run(_file_size, Path(path))

    async def exists(self, path: str | Path) -> bool:
        return await self.size(path) is not None

    async def delete(self, path: str | Path) -> bool:
        """Delete a file. Returns False if it was already gone."""
        return await self._run(_unlink, Path(path))

    async def list_files(self) -> list[Path]:
        """List the regular files directly under the root."""
        return await self._run(_list_files, self.root)


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name[:32]}.", suffix=TEMP_SUFFIX, dir=path.parent
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def _list_files(root: Path) -> list[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.iterdir() if p.is_file())
