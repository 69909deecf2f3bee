"""Filesystem scanner and differ for Longbox.

Responsible for reconciling the comic files on disk with the indexed records
of a library.

Implements:
- discovery: recursive walk returning comic archives under a root
- diff: classify files as new / moved / orphaned / unchanged (read-only)
- apply: persist a diff, with two-scan confirmation before deleting records
"""

from __future__ import annotations

import dataclasses
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .archive import is_comic_archive
from .logging_config import get_logger
from .models import FileStatus
from .path_utils import to_relative
from .repository import Repository
from .utils import from_timestamp, partial_hash, short_path, utc_now

logger = get_logger(__name__)


DEFAULT_IGNORE_PATTERNS = (".DS_Store", "Thumbs.db", "@eaDir")


class LibraryNotFoundError(Exception):
    """No library with the requested id."""


class LibraryPathError(Exception):
    """The library root is missing or unreadable."""


@dataclasses.dataclass
class DiscoveredFile:
    path: Path
    relative_path: str
    filename: str
    extension: str
    size: int
    modified_at: datetime
    hash: Optional[str] = None


@dataclasses.dataclass
class ScanError:
    path: str
    message: str


@dataclasses.dataclass
class DiscoveryResult:
    files: List[DiscoveredFile]
    errors: List[ScanError]


@dataclasses.dataclass
class MovedFile:
    file_id: str
    old_path: str
    new_path: str


@dataclasses.dataclass
class OrphanedFile:
    file_id: str
    path: str
    status: FileStatus


@dataclasses.dataclass
class ScanResult:
    """Proposed changes for one library. Nothing here is persisted yet."""

    library_id: str
    library_path: str
    total_files_scanned: int = 0
    new_files: List[DiscoveredFile] = dataclasses.field(default_factory=list)
    moved_files: List[MovedFile] = dataclasses.field(default_factory=list)
    orphaned_files: List[OrphanedFile] = dataclasses.field(default_factory=list)
    restored_files: List[OrphanedFile] = dataclasses.field(default_factory=list)
    existing_orphaned: List[OrphanedFile] = dataclasses.field(default_factory=list)
    unchanged_files: int = 0
    errors: List[ScanError] = dataclasses.field(default_factory=list)
    duration: float = 0.0
    scanned_at: datetime = dataclasses.field(default_factory=utc_now)

    @property
    def existing_orphaned_count(self) -> int:
        return len(self.existing_orphaned)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.new_files
            or self.moved_files
            or self.orphaned_files
            or self.restored_files
            or self.existing_orphaned
        )

    def summary(self) -> dict:
        return {
            "total_files_scanned": self.total_files_scanned,
            "new_files": len(self.new_files),
            "moved_files": len(self.moved_files),
            "orphaned_files": len(self.orphaned_files),
            "restored_files": len(self.restored_files),
            "existing_orphaned": self.existing_orphaned_count,
            "unchanged_files": self.unchanged_files,
            "errors": len(self.errors),
            "duration": round(self.duration, 3),
        }


@dataclasses.dataclass
class ApplyResult:
    added: int = 0
    moved: int = 0
    orphaned: int = 0  # records that left the live index, soft or hard
    deleted: int = 0   # hard-deleted subset of orphaned
    restored: int = 0
    deleted_ids: List[str] = dataclasses.field(default_factory=list)


def _should_ignore(name: str, ignore_patterns: Iterable[str]) -> bool:
    """Hidden entries (including macOS ._ files) and configured names are skipped."""
    if name.startswith("."):
        return True
    return name in ignore_patterns


def discover_files(
    root: Path,
    include_hash: bool = False,
    ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS,
) -> DiscoveryResult:
    """Walk root recursively and return every comic archive under it.

    Unreadable directories and files are recorded in errors; the walk goes on.
    """
    root = Path(root).resolve()
    ignore = tuple(ignore_patterns)
    files: List[DiscoveredFile] = []
    errors: List[ScanError] = []

    def _on_walk_error(exc: OSError) -> None:
        errors.append(ScanError(str(exc.filename or root), exc.strerror or str(exc)))
        logger.warning(f"✗ Cannot read directory {exc.filename}: {exc}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
        dir_path = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if not _should_ignore(d, ignore))

        for name in sorted(filenames):
            if _should_ignore(name, ignore) or not is_comic_archive(name):
                continue
            file_path = dir_path / name
            try:
                stat = file_path.stat()
                file_hash = partial_hash(file_path) if include_hash else None
            except OSError as exc:
                errors.append(ScanError(str(file_path), str(exc)))
                logger.warning(f"✗ {short_path(file_path)} - unable to read: {exc}")
                continue

            files.append(
                DiscoveredFile(
                    path=file_path,
                    relative_path=to_relative(file_path, root),
                    filename=name,
                    extension=file_path.suffix.lower().lstrip("."),
                    size=stat.st_size,
                    modified_at=from_timestamp(stat.st_mtime),
                    hash=file_hash,
                )
            )

    return DiscoveryResult(files, errors)


def verify_library_path(path: Path) -> Optional[str]:
    """Return a reason the path cannot serve as a library root, or None if it can."""
    path = Path(path)
    if not path.exists():
        return f"Library path does not exist: {path}"
    if not path.is_dir():
        return f"Library path is not a directory: {path}"
    if not os.access(path, os.R_OK | os.X_OK):
        return f"Library path is not readable: {path}"
    return None


def scan_library(
    repo: Repository,
    library_id: str,
    discovered: Optional[DiscoveryResult] = None,
    ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS,
) -> ScanResult:
    """Diff the files on disk against the index of a library.

    Matching runs in two passes. A discovered file whose relative path is
    already indexed is unchanged (or restored, when that record was orphaned).
    Any other file is hashed and matched against records whose own path has
    vanished; a hit is a move, a miss is a new file. Records left unmatched
    become orphans, except quarantined ones which are never touched.

    Read-only: the result must be passed to apply_scan_results to take effect.
    """
    started = time.monotonic()
    library = repo.get_library(library_id)
    if library is None:
        raise LibraryNotFoundError(f"Library not found: {library_id}")

    root = Path(library.root_path)
    problem = verify_library_path(root)
    if problem:
        raise LibraryPathError(problem)

    if discovered is None:
        discovered = discover_files(root, include_hash=False, ignore_patterns=ignore_patterns)

    result = ScanResult(
        library_id=library.id,
        library_path=str(root),
        total_files_scanned=len(discovered.files),
        errors=list(discovered.errors),
    )

    records = repo.list_files(library_id)
    by_path = {r.relative_path: r for r in records}
    discovered_paths = {f.relative_path for f in discovered.files}

    # Move candidates: records with a known hash whose path is gone from disk
    by_hash: Dict[str, list] = {}
    for record in records:
        if (
            record.hash
            and record.status != FileStatus.QUARANTINED
            and record.relative_path not in discovered_paths
        ):
            by_hash.setdefault(record.hash, []).append(record)

    matched: set[str] = set()
    for found in discovered.files:
        record = by_path.get(found.relative_path)
        if record is not None:
            matched.add(record.id)
            if record.status == FileStatus.ORPHANED:
                result.restored_files.append(
                    OrphanedFile(record.id, record.relative_path, record.status)
                )
            else:
                result.unchanged_files += 1
            continue

        if found.hash is None:
            try:
                found.hash = partial_hash(found.path)
            except OSError as exc:
                result.errors.append(ScanError(str(found.path), str(exc)))
                continue

        candidates = [r for r in by_hash.get(found.hash, []) if r.id not in matched]
        if candidates:
            record = candidates[0]
            matched.add(record.id)
            result.moved_files.append(
                MovedFile(record.id, record.relative_path, found.relative_path)
            )
        else:
            result.new_files.append(found)

    for record in records:
        if record.id in matched or record.status == FileStatus.QUARANTINED:
            continue
        orphan = OrphanedFile(record.id, record.relative_path, record.status)
        if record.status == FileStatus.ORPHANED:
            result.existing_orphaned.append(orphan)
        else:
            result.orphaned_files.append(orphan)

    result.duration = time.monotonic() - started
    logger.info(
        f"[SCAN] {library.name}: {result.total_files_scanned} files, "
        f"{len(result.new_files)} new, {len(result.moved_files)} moved, "
        f"{len(result.orphaned_files)} orphaned, {result.existing_orphaned_count} to delete, "
        f"{result.unchanged_files} unchanged ({result.duration:.2f}s)"
    )
    return result


def apply_scan_results(repo: Repository, scan_result: ScanResult) -> ApplyResult:
    """Persist a scan diff and commit.

    - new files are inserted as pending
    - moved records get their new path, keeping their id
    - newly missing indexed records become orphaned; newly missing pending
      records were never indexed and are deleted outright
    - records that were already orphaned and are still missing are deleted
    - orphaned records found again are restored to indexed

    Entries that no longer match the database (the result went stale) are skipped.
    """
    library = repo.get_library(scan_result.library_id)
    if library is None:
        raise LibraryNotFoundError(f"Library not found: {scan_result.library_id}")

    root = Path(library.root_path)
    applied = ApplyResult()

    for found in scan_result.new_files:
        if repo.get_file_by_relative_path(library.id, found.relative_path):
            continue
        repo.add_file(
            library=library,
            path=found.path,
            size=found.size,
            modified_at=found.modified_at,
            file_hash=found.hash,
        )
        applied.added += 1
        logger.debug(f"[+] {found.relative_path}")

    for move in scan_result.moved_files:
        record = repo.get_file(move.file_id)
        if record is None:
            continue
        repo.move_file(record, library, root / move.new_path)
        if record.status == FileStatus.ORPHANED:
            repo.set_status(record, FileStatus.INDEXED)
        applied.moved += 1
        logger.debug(f"[→] {move.old_path} → {move.new_path}")

    for orphan in scan_result.orphaned_files:
        record = repo.get_file(orphan.file_id)
        if record is None:
            continue
        if record.status == FileStatus.PENDING:
            repo.delete_file(record)
            applied.deleted += 1
            applied.deleted_ids.append(orphan.file_id)
        elif record.status == FileStatus.INDEXED:
            repo.set_status(record, FileStatus.ORPHANED)
        else:
            continue
        applied.orphaned += 1
        logger.debug(f"[-] {orphan.path}")

    for orphan in scan_result.existing_orphaned:
        record = repo.get_file(orphan.file_id)
        if record is None or record.status != FileStatus.ORPHANED:
            continue
        repo.delete_file(record)
        applied.orphaned += 1
        applied.deleted += 1
        applied.deleted_ids.append(orphan.file_id)
        logger.debug(f"[-] {orphan.path} (confirmed missing)")

    for restored in scan_result.restored_files:
        record = repo.get_file(restored.file_id)
        if record is None or record.status != FileStatus.ORPHANED:
            continue
        repo.set_status(record, FileStatus.INDEXED)
        applied.restored += 1

    repo.commit()
    logger.info(
        f"✓ Applied scan for {library.name}: {applied.added} added, {applied.moved} moved, "
        f"{applied.orphaned} orphaned ({applied.deleted} deleted), {applied.restored} restored"
    )
    return applied


@dataclasses.dataclass
class LibraryStats:
    total_files: int
    by_status: Dict[str, int]
    total_size: int
    covers_generated: int = 0


def get_library_stats(repo: Repository, library_id: str) -> LibraryStats:
    if repo.get_library(library_id) is None:
        raise LibraryNotFoundError(f"Library not found: {library_id}")
    counts = repo.count_by_status(library_id)
    return LibraryStats(
        total_files=sum(counts.values()),
        by_status={status.value: count for status, count in counts.items()},
        total_size=repo.total_size(library_id),
        covers_generated=repo.count_covers_generated(library_id),
    )
