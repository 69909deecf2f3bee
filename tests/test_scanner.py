"""Tests for discovery and the two-step scan diff/apply cycle."""

import shutil
from datetime import timedelta

import pytest

from conftest import make_cbz
from longbox.models import FileStatus
from longbox.scanner import (
    LibraryNotFoundError,
    LibraryPathError,
    apply_scan_results,
    discover_files,
    get_library_stats,
    scan_library,
    verify_library_path,
)
from longbox.utils import from_timestamp, utc_now


def _scan_and_apply(repo, library):
    result = scan_library(repo, library.id)
    return result, apply_scan_results(repo, result)


def test_discover_skips_hidden_ignored_and_non_comics(library_root):
    make_cbz(library_root / "Series" / "issue01.cbz")
    make_cbz(library_root / "Series" / "._issue01.cbz")
    make_cbz(library_root / "@eaDir" / "thumb.cbz")
    make_cbz(library_root / ".hidden" / "secret.cbz")
    (library_root / "notes.txt").write_text("not a comic")
    make_cbz(library_root / "plain.zip")

    result = discover_files(library_root)

    assert [f.relative_path for f in result.files] == ["Series/issue01.cbz"]
    assert result.files[0].extension == "cbz"
    assert result.files[0].hash is None
    assert result.errors == []


def test_verify_library_path(tmp_path):
    assert verify_library_path(tmp_path) is None
    assert "does not exist" in verify_library_path(tmp_path / "nope")
    file_path = tmp_path / "file.txt"
    file_path.write_text("x")
    assert "not a directory" in verify_library_path(file_path)


def test_new_files_are_added_as_pending(repo, library, library_root):
    make_cbz(library_root / "Series" / "issue01.cbz")

    result, applied = _scan_and_apply(repo, library)

    assert len(result.new_files) == 1
    assert applied.added == 1
    record = repo.get_file_by_relative_path(library.id, "Series/issue01.cbz")
    assert record.status == FileStatus.PENDING
    assert record.hash
    assert record.filename == "issue01.cbz"


def test_scan_is_read_only(repo, library, library_root):
    make_cbz(library_root / "issue01.cbz")
    scan_library(repo, library.id)
    assert repo.list_files(library.id) == []


def test_second_scan_without_changes(repo, library, library_root):
    make_cbz(library_root / "issue01.cbz")
    _scan_and_apply(repo, library)

    result = scan_library(repo, library.id)

    assert not result.has_changes
    assert result.unchanged_files == 1


def test_moved_file_keeps_its_identity(repo, library, library_root):
    original = make_cbz(library_root / "Inbox" / "issue01.cbz")
    _scan_and_apply(repo, library)
    file_id = repo.get_file_by_relative_path(library.id, "Inbox/issue01.cbz").id

    (library_root / "Series").mkdir()
    shutil.move(str(original), str(library_root / "Series" / "renamed.cbz"))
    result, applied = _scan_and_apply(repo, library)

    assert [(m.old_path, m.new_path) for m in result.moved_files] == [
        ("Inbox/issue01.cbz", "Series/renamed.cbz")
    ]
    assert result.new_files == []
    assert applied.moved == 1
    moved = repo.get_file(file_id)
    assert moved.relative_path == "Series/renamed.cbz"
    assert moved.filename == "renamed.cbz"


def test_missing_indexed_file_needs_two_scans_to_delete(repo, library, library_root):
    comic = make_cbz(library_root / "issue01.cbz")
    _scan_and_apply(repo, library)
    record = repo.get_file_by_relative_path(library.id, "issue01.cbz")
    repo.set_status(record, FileStatus.INDEXED)
    repo.commit()

    comic.unlink()
    first, applied = _scan_and_apply(repo, library)
    assert len(first.orphaned_files) == 1
    assert applied.orphaned == 1 and applied.deleted == 0
    assert repo.get_file(record.id).status == FileStatus.ORPHANED

    second, applied = _scan_and_apply(repo, library)
    assert second.existing_orphaned_count == 1
    assert applied.deleted == 1
    assert applied.deleted_ids == [record.id]
    assert repo.get_file(record.id) is None


def test_missing_pending_file_is_deleted_at_once(repo, library, library_root):
    comic = make_cbz(library_root / "issue01.cbz")
    _scan_and_apply(repo, library)
    record = repo.get_file_by_relative_path(library.id, "issue01.cbz")

    comic.unlink()
    _, applied = _scan_and_apply(repo, library)

    assert applied.deleted == 1
    assert repo.get_file(record.id) is None


def test_orphan_that_reappears_is_restored(repo, library, library_root):
    comic = make_cbz(library_root / "issue01.cbz")
    _scan_and_apply(repo, library)
    record = repo.get_file_by_relative_path(library.id, "issue01.cbz")
    repo.set_status(record, FileStatus.INDEXED)
    repo.commit()
    saved = comic.read_bytes()

    comic.unlink()
    _scan_and_apply(repo, library)
    comic.write_bytes(saved)
    result, applied = _scan_and_apply(repo, library)

    assert len(result.restored_files) == 1
    assert applied.restored == 1
    assert repo.get_file(record.id).status == FileStatus.INDEXED


def test_quarantined_records_are_left_alone(repo, library, library_root):
    comic = make_cbz(library_root / "issue01.cbz")
    _scan_and_apply(repo, library)
    record = repo.get_file_by_relative_path(library.id, "issue01.cbz")
    repo.set_status(record, FileStatus.QUARANTINED)
    repo.commit()

    comic.unlink()
    result, _ = _scan_and_apply(repo, library)

    assert result.orphaned_files == []
    assert repo.get_file(record.id).status == FileStatus.QUARANTINED


def test_unknown_library_and_missing_root(repo, library, library_root):
    with pytest.raises(LibraryNotFoundError):
        scan_library(repo, "no-such-library")

    shutil.rmtree(library_root)
    with pytest.raises(LibraryPathError):
        scan_library(repo, library.id)


def test_library_stats(repo, library, library_root):
    make_cbz(library_root / "a.cbz")
    make_cbz(library_root / "b.cbz", pages=["1.png", "2.png"])
    _scan_and_apply(repo, library)

    stats = get_library_stats(repo, library.id)

    assert stats.total_files == 2
    assert stats.by_status["pending"] == 2
    assert stats.total_size > 0
    assert stats.covers_generated == 0


def test_timestamps_are_timezone_aware(repo, library, library_root):
    comic = make_cbz(library_root / "issue01.cbz")
    assert utc_now().utcoffset() == timedelta(0)
    assert from_timestamp(comic.stat().st_mtime).utcoffset() == timedelta(0)

    _scan_and_apply(repo, library)

    record = repo.get_file_by_relative_path(library.id, "issue01.cbz")
    assert record.modified_at.tzinfo is not None
    assert record.created_at.tzinfo is not None


def test_new_files_and_confirmed_orphan_in_one_scan(repo, library, library_root):
    for name in ("a.cbz", "b.cbz", "c.cbz"):
        make_cbz(library_root / "Saga" / name)
    stale = repo.add_file(
        library=library,
        path=library_root / "Saga" / "gone.cbz",
        size=10,
        modified_at=utc_now(),
        file_hash="0" * 64,
        status=FileStatus.ORPHANED,
    )
    repo.commit()

    result, applied = _scan_and_apply(repo, library)

    assert result.existing_orphaned_count == 1
    assert applied.added == 3
    assert applied.moved == 0
    assert applied.orphaned <= 1
    assert repo.get_file(stale.id) is None

    rescan = scan_library(repo, library.id)
    assert not rescan.has_changes
    assert rescan.unchanged_files == 3
