"""Utility functions for Longbox."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path

# Bytes read from each end of a file for the partial content hash
HASH_CHUNK_SIZE = 64 * 1024


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    """Convert a stat() mtime to an aware UTC datetime, like utc_now()."""
    return datetime.fromtimestamp(ts, timezone.utc)


def short_path(path: Path) -> str:
    """Return abbreviated path showing only parent folder + filename.

    Example: /very/long/path/to/folder/file.cbz -> folder/file.cbz
    """
    return f"{path.parent.name}/{path.name}"


def partial_hash(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Hash a file by its size plus its first and last chunk.

    Identifies the same archive across renames without reading it whole.
    Raises OSError if the file cannot be read.
    """
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        handle.seek(0, 2)
        size = handle.tell()
        digest.update(str(size).encode("ascii"))
        handle.seek(0)
        digest.update(handle.read(chunk_size))
        if size > chunk_size:
            handle.seek(max(size - chunk_size, chunk_size))
            digest.update(handle.read(chunk_size))
    return digest.hexdigest()
