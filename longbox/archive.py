"""Archive handling utilities for Longbox.

Provides a unified read interface over CBZ (zip), CBR (rar), CB7 (7z) and
CBT (tar) archives, entry listing with an in-memory listing cache, and the
modifiability check used before any page mutation.
"""

from __future__ import annotations

import dataclasses
import enum
import tarfile
import tempfile
import threading
import time
import zipfile
from collections import OrderedDict
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, List, Optional, Protocol

import py7zr
import rarfile

from .logging_config import get_logger

logger = get_logger(__name__)


IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
COMIC_EXTENSIONS = {".cbz", ".cbr", ".cb7", ".cbt"}
COMIC_INFO_NAME = "comicinfo.xml"


class ArchiveFormat(str, enum.Enum):
    ZIP = "zip"
    RAR = "rar"
    SEVEN_ZIP = "7z"
    TAR = "tar"
    UNKNOWN = "unknown"


FORMAT_BY_EXTENSION = {
    ".cbz": ArchiveFormat.ZIP,
    ".zip": ArchiveFormat.ZIP,
    ".cbr": ArchiveFormat.RAR,
    ".rar": ArchiveFormat.RAR,
    ".cb7": ArchiveFormat.SEVEN_ZIP,
    ".7z": ArchiveFormat.SEVEN_ZIP,
    ".cbt": ArchiveFormat.TAR,
    ".tar": ArchiveFormat.TAR,
}


class ArchiveError(Exception):
    """Raised when an archive cannot be opened or read."""


def is_image(filename: str) -> bool:
    return PurePosixPath(filename).suffix.lower() in IMAGE_EXTENSIONS


def get_archive_format(path: Path | str) -> ArchiveFormat:
    """Archive format implied by the file extension (case-insensitive)."""
    return FORMAT_BY_EXTENSION.get(Path(path).suffix.lower(), ArchiveFormat.UNKNOWN)


def is_comic_archive(path: Path | str) -> bool:
    """True only for comic extensions; plain .zip/.rar/.7z/.tar are not comics."""
    return Path(path).suffix.lower() in COMIC_EXTENSIONS


def detect_format_by_magic(path: Path) -> ArchiveFormat:
    """Sniff the archive format from its leading bytes."""
    try:
        with path.open("rb") as handle:
            header = handle.read(262)
    except OSError:
        return ArchiveFormat.UNKNOWN

    if header[:4] in (b"PK\x03\x04", b"PK\x05\x06"):
        return ArchiveFormat.ZIP
    if header[:4] == b"Rar!":
        return ArchiveFormat.RAR
    if header[:6] == b"7z\xbc\xaf\x27\x1c":
        return ArchiveFormat.SEVEN_ZIP
    if header[257:262] == b"ustar":
        return ArchiveFormat.TAR
    return ArchiveFormat.UNKNOWN


@dataclasses.dataclass(frozen=True)
class ArchiveEntry:
    path: str
    size: int
    is_directory: bool = False

    @property
    def is_image(self) -> bool:
        return not self.is_directory and is_image(self.path)

    @property
    def basename(self) -> str:
        return PurePosixPath(self.path.rstrip("/")).name


@dataclasses.dataclass(frozen=True)
class ArchiveListing:
    entries: tuple[ArchiveEntry, ...]
    file_count: int
    has_comic_info: bool
    cover_path: Optional[str]
    total_size: int
    format: ArchiveFormat = ArchiveFormat.UNKNOWN

    @property
    def images(self) -> List[str]:
        return sorted(e.path for e in self.entries if e.is_image)

    @property
    def page_count(self) -> int:
        return sum(1 for e in self.entries if e.is_image)


def find_cover(entries: Iterable[ArchiveEntry]) -> Optional[str]:
    """An image named cover.<ext> if present, else the first image by name."""
    images = sorted(e.path for e in entries if e.is_image)
    if not images:
        return None
    for name in images:
        if PurePosixPath(name).stem.lower() == "cover":
            return name
    return images[0]


def summarize_entries(
    entries: Iterable[ArchiveEntry], fmt: ArchiveFormat = ArchiveFormat.UNKNOWN
) -> ArchiveListing:
    entries = tuple(entries)
    files = [e for e in entries if not e.is_directory]
    return ArchiveListing(
        entries=entries,
        file_count=len(files),
        has_comic_info=any(e.basename.lower() == COMIC_INFO_NAME for e in files),
        cover_path=find_cover(entries),
        total_size=sum(e.size for e in files),
        format=fmt,
    )


class Archive(Protocol):
    def entries(self) -> List[ArchiveEntry]:
        ...

    def list_images(self) -> List[str]:
        ...

    def list_names(self) -> List[str]:
        """List all file names in the archive (for finding ComicInfo.xml etc.)."""
        ...

    def read(self, filename: str) -> bytes:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> "Archive":
        ...

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        ...


class _ArchiveWrapper:
    """Shared helpers; subclasses implement entries(), read() and close()."""

    format = ArchiveFormat.UNKNOWN

    def entries(self) -> List[ArchiveEntry]:
        raise NotImplementedError

    def list_images(self) -> List[str]:
        return [e.path for e in self.entries() if e.is_image]

    def list_names(self) -> List[str]:
        return [e.path for e in self.entries() if not e.is_directory]

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ZipArchiveWrapper(_ArchiveWrapper):
    format = ArchiveFormat.ZIP

    def __init__(self, path: Path):
        self.zf = zipfile.ZipFile(path, mode="r")

    def entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(info.filename, info.file_size, info.is_dir())
            for info in self.zf.infolist()
        ]

    def read(self, filename: str) -> bytes:
        return self.zf.read(filename)

    def close(self) -> None:
        self.zf.close()


class RarArchiveWrapper(_ArchiveWrapper):
    format = ArchiveFormat.RAR

    def __init__(self, path: Path):
        self.rf = rarfile.RarFile(path, mode="r")

    def entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(info.filename, info.file_size, info.is_dir())
            for info in self.rf.infolist()
        ]

    def read(self, filename: str) -> bytes:
        return self.rf.read(filename)

    def close(self) -> None:
        self.rf.close()


class TarArchiveWrapper(_ArchiveWrapper):
    format = ArchiveFormat.TAR

    def __init__(self, path: Path):
        self.tf = tarfile.open(path, mode="r")

    def entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(member.name, member.size, member.isdir())
            for member in self.tf.getmembers()
            if member.isfile() or member.isdir()
        ]

    def read(self, filename: str) -> bytes:
        handle = self.tf.extractfile(filename)
        if handle is None:
            raise ArchiveError(f"Not a regular file: {filename}")
        with handle:
            return handle.read()

    def close(self) -> None:
        self.tf.close()


class SevenZipArchiveWrapper(_ArchiveWrapper):
    format = ArchiveFormat.SEVEN_ZIP

    def __init__(self, path: Path):
        self.path = path
        self.sz = py7zr.SevenZipFile(path, mode="r")

    def entries(self) -> List[ArchiveEntry]:
        return [
            ArchiveEntry(info.filename, info.uncompressed or 0, info.is_directory)
            for info in self.sz.list()
        ]

    def read(self, filename: str) -> bytes:
        # py7zr reads through extraction; reopen since extract() consumes the handle
        with tempfile.TemporaryDirectory(prefix="longbox-7z-") as tmp:
            with py7zr.SevenZipFile(self.path, mode="r") as sz:
                sz.extract(path=tmp, targets=[filename])
            target = Path(tmp) / filename
            if not target.is_file():
                raise ArchiveError(f"Entry not found: {filename}")
            return target.read_bytes()

    def close(self) -> None:
        self.sz.close()


WRAPPERS = {
    ArchiveFormat.ZIP: ZipArchiveWrapper,
    ArchiveFormat.RAR: RarArchiveWrapper,
    ArchiveFormat.TAR: TarArchiveWrapper,
    ArchiveFormat.SEVEN_ZIP: SevenZipArchiveWrapper,
}


def get_archive(path: Path) -> Archive:
    """Open an archive, trusting its magic bytes over its extension.

    Misnamed files (zip bytes in a .cbr) open with the right reader.
    """
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    fmt = detect_format_by_magic(path)
    if fmt is ArchiveFormat.UNKNOWN:
        fmt = get_archive_format(path)
    if fmt is ArchiveFormat.UNKNOWN:
        raise ArchiveError(f"Unsupported archive format: {path.suffix}")

    return WRAPPERS[fmt](path)


class ArchiveListingCache:
    """Listings keyed by path, valid while (mtime_ns, size) is unchanged.

    Bounded in size (least recently used entries go first) and in age.
    """

    def __init__(
        self,
        max_entries: int = 500,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: "OrderedDict[str, tuple[tuple[int, int], float, ArchiveListing]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def configure(self, max_entries: int, ttl_seconds: float) -> None:
        with self._lock:
            self.max_entries = max_entries
            self.ttl_seconds = ttl_seconds
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def get(self, path: Path, signature: tuple[int, int]) -> Optional[ArchiveListing]:
        key = str(path)
        with self._lock:
            item = self._items.get(key)
            if item is None:
                self.misses += 1
                return None
            cached_signature, stored_at, listing = item
            if cached_signature != signature or self._clock() - stored_at > self.ttl_seconds:
                del self._items[key]
                self.misses += 1
                return None
            self._items.move_to_end(key)
            self.hits += 1
            return listing

    def put(self, path: Path, signature: tuple[int, int], listing: ArchiveListing) -> None:
        key = str(path)
        with self._lock:
            self._items[key] = (signature, self._clock(), listing)
            self._items.move_to_end(key)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)

    def invalidate(self, path: Path) -> None:
        with self._lock:
            self._items.pop(str(path), None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._items),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }


listing_cache = ArchiveListingCache()


def clear_listing_cache() -> None:
    listing_cache.clear()


def _signature(path: Path) -> tuple[int, int]:
    stat = path.stat()
    return stat.st_mtime_ns, stat.st_size


def list_entries(path: Path, use_cache: bool = True) -> ArchiveListing:
    """List an archive's entries with file count, ComicInfo presence and cover.

    Raises FileNotFoundError for a missing path and the reader's own error
    (or ArchiveError) for an unreadable archive.
    """
    path = Path(path)
    signature = _signature(path)
    if use_cache:
        cached = listing_cache.get(path, signature)
        if cached is not None:
            return cached

    with get_archive(path) as archive:
        listing = summarize_entries(archive.entries(), archive.format)

    listing_cache.put(path, signature, listing)
    return listing


def read_entry(path: Path, entry_name: str) -> bytes:
    """Read the raw bytes of one entry."""
    with get_archive(Path(path)) as archive:
        return archive.read(entry_name)


@dataclasses.dataclass
class ModifiableCheck:
    is_modifiable: bool
    format: ArchiveFormat
    page_count: int = 0
    reason: Optional[str] = None


def check_archive_modifiable(path: Path) -> ModifiableCheck:
    """Whether pages of this archive can be rewritten in place (zip only)."""
    path = Path(path)
    if not path.is_file():
        return ModifiableCheck(False, ArchiveFormat.UNKNOWN, 0, f"File not found: {path}")

    fmt = detect_format_by_magic(path)
    if fmt is ArchiveFormat.UNKNOWN:
        fmt = get_archive_format(path)

    if fmt is not ArchiveFormat.ZIP:
        try:
            page_count = list_entries(path).page_count
        except Exception:
            page_count = 0
        return ModifiableCheck(
            False,
            fmt,
            page_count,
            f"{fmt.value} archives cannot be modified in place; convert to CBZ first",
        )

    try:
        page_count = list_entries(path).page_count
    except Exception as exc:
        return ModifiableCheck(False, fmt, 0, f"Unreadable archive: {exc}")
    return ModifiableCheck(True, fmt, page_count)


@dataclasses.dataclass
class ArchiveValidation:
    valid: bool
    error: Optional[str] = None
    listing: Optional[ArchiveListing] = None


def validate_archive(path: Path) -> ArchiveValidation:
    """Check that an archive opens and holds at least one page image."""
    try:
        listing = list_entries(path)
    except Exception as exc:
        logger.debug(f"✗ {Path(path).name} - invalid archive: {exc}")
        return ArchiveValidation(False, f"Cannot read archive: {exc}")

    if listing.file_count == 0:
        return ArchiveValidation(False, "Archive is empty", listing)
    if listing.page_count == 0:
        return ArchiveValidation(False, "Archive contains no images", listing)
    return ArchiveValidation(True, None, listing)
