"""Tests for the five-stage scan pipeline run through the service and queue."""

import shutil

import pytest

from conftest import make_cbz
from longbox.config import LibraryConfig, LongboxConfig
from longbox.covers import ThumbnailCoverExtractor
from longbox.job_queue import CancellationToken, QueueFullError
from longbox.linking import FolderSeriesLinker
from longbox.metadata import ComicInfoMetadataExtractor
from longbox.models import FileStatus, OperationKind, ScanStage
from longbox.orchestrator import ScanOrchestrator
from longbox.repository import Repository
from longbox.scan_jobs import ScanJobService
from longbox.scanner import LibraryPathError
from longbox.service import ScanService
from sqlmodel import Session

BATMAN_INFO = """<?xml version="1.0"?>
<ComicInfo>
  <Series>Batman</Series>
  <Number>1</Number>
  <Publisher>DC</Publisher>
</ComicInfo>"""


@pytest.fixture
def config(tmp_path, library_root):
    return LongboxConfig(library=LibraryConfig(path=library_root, name="Test"), data_dir=tmp_path)


@pytest.fixture
def service(engine, config):
    svc = ScanService(engine, config)
    yield svc
    svc.shutdown(timeout=5)


def _files(engine, library_id):
    with Session(engine) as session:
        return {f.relative_path: f for f in Repository(session).list_files(library_id)}


def _run_full_scan(service, library_id, operation=OperationKind.SCAN):
    job = service.enqueue_scan(library_id, operation)
    assert service.wait_idle(30)
    return service.jobs.get(job.id)


def test_full_scan_indexes_links_and_extracts_covers(service, engine, library_root):
    make_cbz(library_root / "Batman" / "batman-001.cbz", comic_info=BATMAN_INFO)
    make_cbz(library_root / "Batman" / "batman-002.cbz", pages=["a.png", "b.png"])
    library = service.ensure_library("Test", library_root)

    job = _run_full_scan(service, library.id)

    assert job.stage == ScanStage.COMPLETE
    assert job.discovered_files == 2
    assert job.indexed_files == 2
    assert job.linked_files == 2
    assert job.series_created == 1
    assert job.covers_extracted == 2
    assert job.error_count == 0
    assert job.started_at is not None and job.completed_at is not None

    files = _files(engine, library.id)
    assert {f.status for f in files.values()} == {FileStatus.INDEXED}
    assert len({f.series_id for f in files.values()}) == 1
    for record in files.values():
        assert record.cover_generated
        assert service.covers.cover_path(record.id).exists()

    stages = [entry.stage for entry in job.logs]
    for stage in (ScanStage.DISCOVERING, ScanStage.CLEANING, ScanStage.INDEXING, ScanStage.LINKING, ScanStage.COVERS):
        assert stage in stages


def test_rescan_reuses_metadata_and_covers(service, library_root):
    make_cbz(library_root / "Saga" / "saga-001.cbz")
    library = service.ensure_library("Test", library_root)
    _run_full_scan(service, library.id)

    job = _run_full_scan(service, library.id)

    assert job.stage == ScanStage.COMPLETE
    assert job.indexed_files == 0
    assert job.covers_extracted == 0
    assert job.covers_cached == 1


def test_unreadable_archive_counts_as_error(service, engine, library_root):
    make_cbz(library_root / "Saga" / "saga-001.cbz")
    broken = library_root / "Saga" / "saga-002.cbz"
    broken.write_bytes(b"PK\x03\x04 definitely not a zip")
    library = service.ensure_library("Test", library_root)

    job = _run_full_scan(service, library.id)

    assert job.stage == ScanStage.COMPLETE
    assert job.indexed_files == 1
    assert job.error_count >= 1
    assert _files(engine, library.id)["Saga/saga-002.cbz"].status == FileStatus.PENDING


def test_covers_operation_runs_covers_stage_only(service, engine, library_root):
    make_cbz(library_root / "Saga" / "saga-001.cbz")
    library = service.ensure_library("Test", library_root)
    _run_full_scan(service, library.id)
    service.covers.regenerate = True

    job = _run_full_scan(service, library.id, OperationKind.COVERS)

    assert job.operation == OperationKind.COVERS
    assert job.stage == ScanStage.COMPLETE
    assert job.covers_extracted == 1
    assert job.discovered_files == 0


def test_resumed_covers_job_keeps_its_counters(service, library_root):
    make_cbz(library_root / "Saga" / "saga-001.cbz")
    library = service.ensure_library("Test", library_root)
    _run_full_scan(service, library.id)
    job = service.jobs.create(library.id, OperationKind.COVERS)
    service.jobs.set_stage(job.id, ScanStage.COVERS, "Extracting covers")
    service.jobs.update_progress(job.id, covers_extracted=4, covers_cached=2, error_count=1)

    service.orchestrator.run_covers(job.id, CancellationToken())

    resumed = service.jobs.get(job.id)
    assert resumed.stage == ScanStage.COMPLETE
    assert resumed.covers_extracted == 4
    assert resumed.covers_cached == 3
    assert resumed.error_count == 1


def test_missing_library_root_fails_the_job(engine, config, library_root):
    jobs = ScanJobService(engine)
    orchestrator = ScanOrchestrator(
        engine, jobs, ComicInfoMetadataExtractor(), FolderSeriesLinker(),
        ThumbnailCoverExtractor(config.covers_dir),
    )
    with Session(engine) as session:
        repo = Repository(session)
        library = repo.create_library("Test", library_root)
        repo.commit()
        library_id = library.id
    job = jobs.create(library_id)
    shutil.rmtree(library_root)

    with pytest.raises(LibraryPathError):
        orchestrator.run_scan(job.id, CancellationToken())

    failed = jobs.get(job.id)
    assert failed.stage == ScanStage.FAILED
    assert "does not exist" in failed.error


class _CancelAfterFirst:
    def __init__(self, token):
        self.token = token
        self.inner = ComicInfoMetadataExtractor()

    def refresh(self, repo, file_id):
        refreshed = self.inner.refresh(repo, file_id)
        self.token.cancel()
        return refreshed


def test_cancellation_between_batches_keeps_work_done(engine, config, library_root):
    for n in range(3):
        make_cbz(library_root / "Saga" / f"saga-00{n}.cbz", pages=[f"{n}.png"])
    token = CancellationToken()
    jobs = ScanJobService(engine)
    orchestrator = ScanOrchestrator(
        engine, jobs, _CancelAfterFirst(token), FolderSeriesLinker(),
        ThumbnailCoverExtractor(config.covers_dir), batch_size=1,
    )
    with Session(engine) as session:
        repo = Repository(session)
        library_id = repo.create_library("Test", library_root).id
        repo.commit()
    job = jobs.create(library_id)

    orchestrator.run_scan(job.id, token)

    cancelled = jobs.get(job.id)
    assert cancelled.stage == ScanStage.CANCELLED
    assert cancelled.indexed_files == 1
    assert cancelled.linked_files == 0
    statuses = sorted(f.status.value for f in _files(engine, library_id).values())
    assert statuses == ["indexed", "pending", "pending"]


def test_recovery_resumes_interrupted_jobs(engine, config, library_root):
    make_cbz(library_root / "Saga" / "saga-001.cbz")
    first = ScanService(engine, config)
    library = first.ensure_library("Test", library_root)
    interrupted = first.jobs.create(library.id)
    first.jobs.set_stage(interrupted.id, ScanStage.INDEXING, "Extracting metadata")

    restarted = ScanService(engine, config)
    items = restarted.recover()
    assert [item.job_id for item in items] == [interrupted.id]
    assert restarted.wait_idle(30)
    restarted.shutdown(timeout=5)

    job = restarted.jobs.get(interrupted.id)
    assert job.stage == ScanStage.COMPLETE
    assert job.operation == OperationKind.SCAN
    assert any("Interrupted by server restart" in entry.message for entry in job.logs)


def test_enqueue_reuses_active_job(service, library_root, monkeypatch):
    library = service.ensure_library("Test", library_root)
    job = service.jobs.create(library.id)

    monkeypatch.setattr(service.queue, "enqueue", lambda job_id, operation: None)
    assert service.enqueue_scan(library.id).id == job.id


def test_queue_full_removes_the_new_job(service, library_root, monkeypatch):
    library = service.ensure_library("Test", library_root)

    def _full(job_id, operation):
        raise QueueFullError("scan queue is full")

    monkeypatch.setattr(service.queue, "enqueue", _full)
    with pytest.raises(QueueFullError):
        service.enqueue_scan(library.id)
    assert service.jobs.list_jobs(library.id) == []


def test_cancelling_a_stale_active_job_marks_it_cancelled(service, library_root):
    library = service.ensure_library("Test", library_root)
    job = service.jobs.create(library.id)

    outcome = service.cancel_job(job.id)

    assert outcome.value == "not_found"
    assert service.jobs.get(job.id).stage == ScanStage.CANCELLED


def test_interactive_scan_apply_and_discard(service, engine, library_root):
    from longbox.pending import PendingScanNotFoundError

    make_cbz(library_root / "issue01.cbz")
    library = service.ensure_library("Test", library_root)

    scan_id, result = service.start_interactive_scan(library.id)
    assert len(result.new_files) == 1
    with pytest.raises(PendingScanNotFoundError):
        service.apply_pending(scan_id, "another-library")

    applied = service.apply_pending(scan_id, library.id)
    assert applied.added == 1
    with pytest.raises(PendingScanNotFoundError):
        service.apply_pending(scan_id, library.id)

    scan_id, _ = service.start_interactive_scan(library.id)
    service.discard_pending(scan_id, library.id)
    assert service.pending.get(scan_id) is None
    assert list(_files(engine, library.id)) == ["issue01.cbz"]
