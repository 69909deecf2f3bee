"""Tests for persisted scan job state."""

import pytest

from longbox.models import LogLevel, OperationKind, ScanStage
from longbox.scan_jobs import ScanJobService, job_to_dict


@pytest.fixture
def jobs(engine):
    return ScanJobService(engine)


def test_create_returns_the_active_job(jobs, library):
    first = jobs.create(library.id)
    second = jobs.create(library.id, OperationKind.COVERS)
    assert second.id == first.id

    jobs.complete(first.id)
    third = jobs.create(library.id, OperationKind.COVERS)
    assert third.id != first.id
    assert third.operation == OperationKind.COVERS


def test_stage_progress_and_logs(jobs, library):
    job = jobs.create(library.id)
    jobs.set_stage(job.id, ScanStage.DISCOVERING, "Discovering files")
    jobs.update_progress(job.id, message="Found 3 files", discovered_files=3)
    jobs.add_log(job.id, "2 paths could not be read", detail="a\nb", level=LogLevel.WARNING)

    data = job_to_dict(jobs.get(job.id))

    assert data["stage"] == "discovering"
    assert data["current_message"] == "Found 3 files"
    assert data["progress"]["discovered_files"] == 3
    assert data["started_at"] is not None
    assert [entry["message"] for entry in data["logs"]] == [
        "Job created (scan)",
        "Discovering files",
        "2 paths could not be read",
    ]
    assert data["logs"][-1]["level"] == "warning"


def test_unknown_progress_counter_is_rejected(jobs, library):
    job = jobs.create(library.id)
    with pytest.raises(ValueError):
        jobs.update_progress(job.id, bogus=1)


def test_fail_records_error(jobs, library):
    job = jobs.create(library.id)
    jobs.set_stage(job.id, ScanStage.INDEXING)
    failed = jobs.fail(job.id, "disk on fire")

    assert failed.stage == ScanStage.FAILED
    assert failed.error == "disk on fire"
    assert failed.completed_at is not None
    assert jobs.get_active(library.id) is None


def test_find_recoverable_maps_stage_to_operation(jobs, repo, tmp_path):
    libs = []
    for name in ("a", "b", "c"):
        root = tmp_path / name
        root.mkdir()
        libs.append(repo.create_library(name, root))
    repo.commit()

    queued = jobs.create(libs[0].id, OperationKind.COVERS)
    linking = jobs.create(libs[1].id)
    jobs.set_stage(linking.id, ScanStage.LINKING)
    covers = jobs.create(libs[2].id)
    jobs.set_stage(covers.id, ScanStage.COVERS)

    found = dict(jobs.find_recoverable())

    assert found == {
        queued.id: OperationKind.COVERS,
        linking.id: OperationKind.SCAN,
        covers.id: OperationKind.COVERS,
    }
    for job_id in found:
        job = jobs.get(job_id)
        assert job.stage == ScanStage.QUEUED
        assert job.logs[-1].level == LogLevel.WARNING


def test_cleanup_old_keeps_newest_per_library(jobs, library):
    ids = []
    for _ in range(4):
        job = jobs.create(library.id)
        jobs.complete(job.id)
        ids.append(job.id)

    assert jobs.cleanup_old(keep_per_library=2) == 2
    remaining = {job.id for job in jobs.list_jobs(library.id)}
    assert remaining == set(ids[2:])
