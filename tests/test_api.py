"""Tests for the HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from conftest import make_cbz
from longbox.api import create_app
from longbox.config import LibraryConfig, LongboxConfig
from longbox.job_queue import QueueFullError
from longbox.service import ScanService


@pytest.fixture
def service(engine, tmp_path, library_root):
    config = LongboxConfig(library=LibraryConfig(path=library_root, name="Test"), data_dir=tmp_path)
    return ScanService(engine, config)


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def test_list_libraries(client, service, library_root):
    library = service.ensure_library("Test", library_root)
    response = client.get("/api/libraries")
    assert response.status_code == 200
    assert response.json() == [{"id": library.id, "name": "Test", "root_path": str(library_root.resolve())}]


def test_interactive_scan_round_trip(client, service, library_root):
    make_cbz(library_root / "Series" / "issue01.cbz")
    library = service.ensure_library("Test", library_root)

    response = client.post(f"/api/libraries/{library.id}/scan")
    assert response.status_code == 200
    body = response.json()
    assert body["summary"]["new_files"] == 1
    assert body["new_files"] == ["Series/issue01.cbz"]

    applied = client.post(f"/api/libraries/{library.id}/scan/{body['scan_id']}/apply")
    assert applied.status_code == 200
    assert applied.json()["added"] == 1

    again = client.post(f"/api/libraries/{library.id}/scan/{body['scan_id']}/apply")
    assert again.status_code == 404


def test_discard_unknown_scan(client, service, library_root):
    library = service.ensure_library("Test", library_root)
    response = client.delete(f"/api/libraries/{library.id}/scan/scan_0_missing")
    assert response.status_code == 404


def test_scan_unknown_library(client):
    assert client.post("/api/libraries/nope/scan").status_code == 404
    assert client.post("/api/libraries/nope/full-scan").status_code == 404


def test_full_scan_is_queued_and_reported(client, service, library_root):
    make_cbz(library_root / "Series" / "issue01.cbz")
    library = service.ensure_library("Test", library_root)

    response = client.post(f"/api/libraries/{library.id}/full-scan")
    assert response.status_code == 202
    job_id = response.json()["id"]

    assert service.wait_idle(30)
    status = client.get(f"/api/scan-jobs/{job_id}").json()
    assert status["stage"] == "complete"
    assert status["progress"]["indexed_files"] == 1
    assert status["queue"]["status"] == "completed"

    queue = client.get("/api/queue").json()
    assert queue["length"] == 0
    assert queue["max_size"] == 20


def test_full_scan_when_queue_is_full(client, service, library_root, monkeypatch):
    library = service.ensure_library("Test", library_root)

    def _full(job_id, operation):
        raise QueueFullError("scan queue is full (20/20); try again later")

    monkeypatch.setattr(service.queue, "enqueue", _full)
    response = client.post(f"/api/libraries/{library.id}/full-scan")
    assert response.status_code == 429


def test_unknown_scan_job(client):
    assert client.get("/api/scan-jobs/nope").status_code == 404
    assert client.post("/api/scan-jobs/nope/cancel").status_code == 404
