"""FastAPI endpoints for Longbox.

Exposes:
- GET    /api/libraries
- POST   /api/libraries/{library_id}/scan                  (interactive diff, held)
- POST   /api/libraries/{library_id}/scan/{scan_id}/apply
- DELETE /api/libraries/{library_id}/scan/{scan_id}
- POST   /api/libraries/{library_id}/full-scan             (queued pipeline)
- GET    /api/scan-jobs/{job_id}
- POST   /api/scan-jobs/{job_id}/cancel
- GET    /api/queue
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response

from .config import LongboxConfig
from .job_queue import QueueFullError
from .logging_config import get_logger
from .models import OperationKind
from .pending import PendingScanNotFoundError
from .scan_jobs import ScanJobNotFoundError
from .scanner import LibraryNotFoundError, LibraryPathError
from .service import ScanService

logger = get_logger(__name__)


def create_app(service: ScanService) -> FastAPI:
    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        recovered = service.recover()
        if recovered:
            logger.info(f"Resumed {len(recovered)} scan job(s) from the previous run")
        yield
        service.shutdown(timeout=5)

    app = FastAPI(title="Longbox", lifespan=_lifespan)
    app.state.service = service

    @app.get("/favicon.ico", include_in_schema=False)
    def favicon() -> Response:
        return Response(status_code=204)

    @app.get("/api/libraries")
    def list_libraries() -> list:
        return [
            {"id": lib.id, "name": lib.name, "root_path": lib.root_path}
            for lib in service.list_libraries()
        ]

    @app.post("/api/libraries/{library_id}/scan")
    def start_scan(library_id: str) -> dict:
        """Diff the library against the index; apply or discard the result later."""
        try:
            scan_id, result = service.start_interactive_scan(library_id)
        except LibraryNotFoundError:
            raise HTTPException(status_code=404, detail="Library not found")
        except LibraryPathError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {
            "scan_id": scan_id,
            "summary": result.summary(),
            "new_files": [f.relative_path for f in result.new_files],
            "moved_files": [dataclasses.asdict(m) for m in result.moved_files],
            "orphaned_files": [o.path for o in result.orphaned_files],
            "errors": [dataclasses.asdict(e) for e in result.errors],
        }

    @app.post("/api/libraries/{library_id}/scan/{scan_id}/apply")
    def apply_scan(library_id: str, scan_id: str) -> dict:
        try:
            applied = service.apply_pending(scan_id, library_id)
        except PendingScanNotFoundError:
            raise HTTPException(status_code=404, detail="Scan not found or expired")
        except LibraryNotFoundError:
            raise HTTPException(status_code=404, detail="Library not found")
        data = dataclasses.asdict(applied)
        data.pop("deleted_ids")
        return data

    @app.delete("/api/libraries/{library_id}/scan/{scan_id}")
    def discard_scan(library_id: str, scan_id: str) -> dict:
        try:
            service.discard_pending(scan_id, library_id)
        except PendingScanNotFoundError:
            raise HTTPException(status_code=404, detail="Scan not found or expired")
        return {"discarded": scan_id}

    @app.post("/api/libraries/{library_id}/full-scan", status_code=202)
    def full_scan(
        library_id: str,
        operation: OperationKind = Query(OperationKind.SCAN),
    ) -> dict:
        try:
            job = service.enqueue_scan(library_id, operation)
        except LibraryNotFoundError:
            raise HTTPException(status_code=404, detail="Library not found")
        except QueueFullError as exc:
            raise HTTPException(status_code=429, detail=str(exc))
        return service.job_status(job.id)

    @app.get("/api/scan-jobs/{job_id}")
    def scan_job(job_id: str) -> dict:
        try:
            return service.job_status(job_id)
        except ScanJobNotFoundError:
            raise HTTPException(status_code=404, detail="Scan job not found")

    @app.post("/api/scan-jobs/{job_id}/cancel")
    def cancel_scan_job(job_id: str) -> dict:
        try:
            outcome = service.cancel_job(job_id)
        except ScanJobNotFoundError:
            raise HTTPException(status_code=404, detail="Scan job not found")
        return {"job_id": job_id, "cancel": outcome.value}

    @app.get("/api/queue")
    def queue_status() -> dict:
        return service.queue_status()

    return app


def run_server(
    service: ScanService,
    config: LongboxConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """Run the FastAPI app with Uvicorn."""
    import uvicorn

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    uvicorn.run(
        create_app(service),
        host=host or config.server_host,
        port=port or config.server_port,
        log_level="info",
        log_config=None,
    )
