"""Page mutation for CBZ archives: reorder and delete.

Every write follows the same backup/swap sequence:

1. copy the archive to ``<archive>.bak``
2. rewrite the archive in place, reading entries from the backup
3. on success remove the backup; on failure move the backup back over the
   archive and report the error

Requests are validated against the current listing before step 1, so a
rejected request never touches the file.
"""

from __future__ import annotations

import dataclasses
import os
import re
import shutil
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any, Iterator, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .archive import check_archive_modifiable, list_entries, listing_cache
from .logging_config import get_logger

logger = get_logger(__name__)

# Exactly four digits and an underscore; "12345_x.jpg" has no prefix
ORDER_PREFIX_RE = re.compile(r"^\d{4}_")


class BackupRestoreError(Exception):
    """A mutation failed and the original could not be restored from its backup.

    The backup file is left on disk for manual recovery.
    """

    def __init__(self, path: Path, backup: Path, cause: BaseException):
        self.path = path
        self.backup = backup
        self.cause = cause
        super().__init__(
            f"Failed to restore {path} after a failed write ({cause}); "
            f"original bytes remain in {backup}"
        )


def strip_order_prefix(basename: str) -> str:
    return ORDER_PREFIX_RE.sub("", basename, count=1)


def apply_order_prefix(name: str, index: int) -> str:
    """Prefix the basename of an entry with its zero-padded page index.

    >>> apply_order_prefix("art/0007_page.jpg", 2)
    'art/0002_page.jpg'
    """
    if index < 0:
        raise ValueError(f"Page index must be non-negative, got {index}")
    directory, _, basename = name.rpartition("/")
    prefixed = f"{index:04d}_{strip_order_prefix(basename)}"
    return f"{directory}/{prefixed}" if directory else prefixed


class DeletePage(BaseModel):
    type: Literal["delete"] = "delete"
    path: str


class ReorderPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["reorder"] = "reorder"
    path: str
    new_index: int = Field(ge=0, alias="newIndex")


PageOperation = Annotated[Union[DeletePage, ReorderPage], Field(discriminator="type")]

_operations_adapter = TypeAdapter(list[PageOperation])


class PageOrder(BaseModel):
    """One entry of a reorder request."""

    model_config = ConfigDict(populate_by_name=True)

    original_path: str = Field(alias="originalPath")
    new_index: int = Field(ge=0, alias="newIndex")


_orders_adapter = TypeAdapter(list[PageOrder])


@dataclasses.dataclass
class ModifyResult:
    success: bool
    deleted_count: int = 0
    reordered_count: int = 0
    new_total_pages: int = 0
    error: Optional[str] = None


@dataclasses.dataclass
class ReorderResult:
    success: bool
    reordered_count: int = 0
    new_total_pages: int = 0
    error: Optional[str] = None


class _Rejected(Exception):
    """Validation failure; carries the page count the archive still has."""

    def __init__(self, message: str, page_count: int = 0):
        super().__init__(message)
        self.page_count = page_count


def backup_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".bak")


@contextmanager
def _backup_swap(path: Path) -> Iterator[Path]:
    """Yield the backup to read from while the caller rewrites ``path``."""
    backup = backup_path_for(path)
    try:
        shutil.copy2(path, backup)
    except OSError:
        backup.unlink(missing_ok=True)
        raise

    try:
        yield backup
    except BaseException as exc:
        # Interrupts too: the half-written archive must never be left behind
        try:
            os.replace(backup, path)
        except OSError as restore_exc:
            logger.critical(
                f"✗ {path.name} - restore from backup failed: {restore_exc}. "
                f"Original archive kept at {backup}"
            )
            raise BackupRestoreError(path, backup, exc) from restore_exc
        logger.warning(f"Restored {path.name} from backup after failed write: {exc!r}")
        raise

    try:
        backup.unlink()
    except OSError as exc:
        logger.warning(f"{path.name} rewritten but stale backup {backup} could not be removed: {exc}")


def _rewrite_zip(source: Path, dest: Path, deletes: set[str], renames: Mapping[str, str]) -> None:
    """Copy entries from source to dest, dropping and renaming as asked.

    Entry order, timestamps and compression of kept entries are preserved.
    """
    with zipfile.ZipFile(source, "r") as src, zipfile.ZipFile(dest, "w") as out:
        out.comment = src.comment
        for info in src.infolist():
            if info.filename in deletes:
                continue
            new_info = zipfile.ZipInfo(renames.get(info.filename, info.filename), info.date_time)
            new_info.compress_type = info.compress_type
            new_info.external_attr = info.external_attr
            new_info.comment = info.comment
            out.writestr(new_info, src.read(info.filename))


def _plan_changes(
    path: Path, delete_paths: Sequence[str], reorders: Sequence[tuple[str, int]]
) -> tuple[set[str], dict[str, str], int]:
    """Validate a request against the archive; return (deletes, renames, pages_after)."""
    check = check_archive_modifiable(path)
    if not check.is_modifiable:
        raise _Rejected(check.reason or "Archive cannot be modified", check.page_count)

    listing = list_entries(path, use_cache=False)
    names = [e.path for e in listing.entries]
    images = {e.path for e in listing.entries if e.is_image}
    page_count = len(images)

    deletes: set[str] = set()
    for name in delete_paths:
        if name not in images:
            raise _Rejected(f"Page not found in archive: {name}", page_count)
        deletes.add(name)

    remaining = page_count - len(deletes)
    if remaining <= 0:
        raise _Rejected("Cannot delete all pages from archive", page_count)

    renames: dict[str, str] = {}
    for name, index in reorders:
        if name not in images:
            raise _Rejected(f"Page not found in archive: {name}", page_count)
        if name in deletes:
            raise _Rejected(f"Page is both deleted and reordered: {name}", page_count)
        if name in renames:
            raise _Rejected(f"Page reordered more than once: {name}", page_count)
        renames[name] = apply_order_prefix(name, index)

    final_names = [renames.get(n, n) for n in names if n not in deletes]
    if len(set(final_names)) != len(final_names):
        raise _Rejected("Reorder would produce duplicate page names", page_count)

    return deletes, renames, remaining


def _apply_changes(
    path: Path, delete_paths: Sequence[str], reorders: Sequence[tuple[str, int]]
) -> ModifyResult:
    try:
        deletes, renames, remaining = _plan_changes(path, delete_paths, reorders)
    except _Rejected as exc:
        logger.warning(f"✗ {path.name} - page change rejected: {exc}")
        return ModifyResult(False, new_total_pages=exc.page_count, error=str(exc))

    try:
        with _backup_swap(path) as backup:
            _rewrite_zip(backup, path, deletes, renames)
    except BackupRestoreError:
        raise
    except Exception as exc:
        logger.error(f"✗ {path.name} - page change failed: {exc}")
        return ModifyResult(False, new_total_pages=remaining + len(deletes), error=str(exc))
    finally:
        listing_cache.invalidate(path)

    logger.info(
        f"✓ {path.name}: {len(deletes)} deleted, {len(renames)} reordered, {remaining} pages"
    )
    return ModifyResult(True, len(deletes), len(renames), remaining)


def modify_pages_in_archive(
    path: Path, operations: Sequence[Union[DeletePage, ReorderPage, Mapping[str, Any]]]
) -> ModifyResult:
    """Apply delete and reorder operations to a CBZ in one rewrite.

    Deletes are validated first; removing every image fails without writing.
    Reorders then rename the remaining pages with their order prefix.
    """
    path = Path(path)
    if not operations:
        return ModifyResult(False, error="No changes")

    try:
        ops = _operations_adapter.validate_python(
            [op.model_dump() if isinstance(op, BaseModel) else op for op in operations]
        )
    except ValidationError as exc:
        return ModifyResult(False, error=f"Invalid page operations: {exc.error_count()} error(s)")

    delete_paths = [op.path for op in ops if isinstance(op, DeletePage)]
    reorders = [(op.path, op.new_index) for op in ops if isinstance(op, ReorderPage)]
    return _apply_changes(path, delete_paths, reorders)


def reorder_pages_in_archive(
    path: Path, orders: Sequence[Union[PageOrder, Mapping[str, Any]]]
) -> ReorderResult:
    """Rename the listed pages with their new order prefix; others keep their names."""
    path = Path(path)
    if not orders:
        return ReorderResult(False, error="No pages to reorder")

    try:
        parsed = _orders_adapter.validate_python(
            [o.model_dump() if isinstance(o, BaseModel) else o for o in orders]
        )
    except ValidationError as exc:
        return ReorderResult(False, error=f"Invalid page order: {exc.error_count()} error(s)")

    result = _apply_changes(path, [], [(o.original_path, o.new_index) for o in parsed])
    return ReorderResult(
        success=result.success,
        reordered_count=result.reordered_count,
        new_total_pages=result.new_total_pages,
        error=result.error,
    )


def delete_pages_from_archive(path: Path, page_paths: Sequence[str]) -> ModifyResult:
    """Convenience wrapper deleting the given image entries."""
    return modify_pages_in_archive(path, [DeletePage(path=p) for p in page_paths])
