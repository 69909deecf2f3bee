"""Path utilities for converting between absolute and library-relative paths.

Comic file records carry both forms. The relative path is the stable key used
by the differ, so a library can be remounted elsewhere without losing identity.
"""

from __future__ import annotations

from pathlib import Path


def to_relative(absolute_path: Path, library_root: Path) -> str:
    """Convert an absolute path to a POSIX relative path string.

    Example:
        >>> to_relative(Path("/library/Comics/Marvel/X-Men.cbz"), Path("/library/Comics"))
        "Marvel/X-Men.cbz"
    """
    try:
        return absolute_path.relative_to(library_root).as_posix()
    except ValueError:
        return absolute_path.as_posix()


def folder_name(relative_path: str) -> str | None:
    """Name of the folder holding a file, or None for files at the library root."""
    parent = Path(relative_path).parent
    if parent == Path("."):
        return None
    return parent.name
