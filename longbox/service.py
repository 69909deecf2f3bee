"""Scan service: wires the scanner, job persistence, orchestrator and queue together.

The CLI and the HTTP API both go through this class.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .archive import listing_cache
from .config import LongboxConfig
from .covers import CoverExtractor, ThumbnailCoverExtractor
from .job_queue import CancelOutcome, JobQueue, QueueFullError, QueueItem
from .linking import FolderSeriesLinker, SeriesLinker
from .logging_config import get_logger
from .metadata import ComicInfoMetadataExtractor, MetadataExtractor
from .models import Library, OperationKind, ScanJob
from .orchestrator import ScanOrchestrator
from .pending import (
    InMemoryPendingScanStore,
    PendingScanNotFoundError,
    PendingScanStore,
    new_scan_id,
)
from .repository import Repository
from .scan_jobs import ScanJobNotFoundError, ScanJobService, job_to_dict
from .scanner import (
    ApplyResult,
    LibraryNotFoundError,
    LibraryPathError,
    ScanResult,
    apply_scan_results,
    scan_library,
    verify_library_path,
)


class ScanService:
    def __init__(
        self,
        engine: Engine,
        config: LongboxConfig,
        pending: Optional[PendingScanStore] = None,
        metadata: Optional[MetadataExtractor] = None,
        linker: Optional[SeriesLinker] = None,
        covers: Optional[CoverExtractor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.engine = engine
        self.config = config
        self.logger = logger or get_logger(__name__)
        self.pending = pending or InMemoryPendingScanStore(
            ttl_seconds=config.queue.pending_ttl_minutes * 60
        )
        self.covers = covers or ThumbnailCoverExtractor(config.covers_dir, config.covers)
        self.jobs = ScanJobService(engine, self.logger)
        self.orchestrator = ScanOrchestrator(
            engine,
            self.jobs,
            metadata or ComicInfoMetadataExtractor(),
            linker or FolderSeriesLinker(),
            self.covers,
            batch_size=config.scanner.batch_size,
            ignore_patterns=config.scanner.ignore_patterns,
            on_files_deleted=self._files_deleted,
            logger=self.logger,
        )
        self.queue = JobQueue(
            "scan",
            self.orchestrator.handlers,
            max_size=config.queue.max_size,
            logger=self.logger,
        )
        listing_cache.configure(
            config.archive.listing_cache_size, config.archive.listing_cache_ttl_seconds
        )

    def _files_deleted(self, file_ids: List[str]) -> None:
        delete_covers = getattr(self.covers, "delete_covers", None)
        if delete_covers is not None:
            delete_covers(file_ids)

    # --- libraries ---

    def ensure_library(self, name: str, root_path: Path) -> Library:
        """Register a library root, or return the one already registered there."""
        problem = verify_library_path(root_path)
        if problem:
            raise LibraryPathError(problem)
        with Session(self.engine, expire_on_commit=False) as session:
            repo = Repository(session)
            library = repo.get_or_create_library(name, root_path)
            repo.commit()
            return library

    def list_libraries(self) -> List[Library]:
        with Session(self.engine, expire_on_commit=False) as session:
            return Repository(session).list_libraries()

    def _require_library(self, library_id: str) -> None:
        with Session(self.engine) as session:
            if Repository(session).get_library(library_id) is None:
                raise LibraryNotFoundError(f"Library not found: {library_id}")

    # --- full scans (queued) ---

    def enqueue_scan(
        self, library_id: str, operation: OperationKind = OperationKind.SCAN
    ) -> ScanJob:
        """Queue a job for the library, reusing its active job if it has one.

        Raises QueueFullError when the queue is at capacity; a job record created
        for this call is removed again.
        """
        self._require_library(library_id)
        existing = self.jobs.get_active(library_id)
        job = existing or self.jobs.create(library_id, operation)
        try:
            self.queue.enqueue(job.id, job.operation)
        except QueueFullError:
            if existing is None:
                self.jobs.delete(job.id)
            raise
        return job

    def cancel_job(self, job_id: str) -> CancelOutcome:
        job = self.jobs.get(job_id)
        if job is None:
            raise ScanJobNotFoundError(job_id)
        outcome = self.queue.cancel(job_id)
        if outcome is CancelOutcome.REMOVED:
            self.jobs.cancel(job_id, "Cancelled before it started")
        elif outcome is CancelOutcome.NOT_FOUND and not job.stage.is_terminal:
            # Left active by an earlier process and never recovered
            self.jobs.cancel(job_id, "Cancelled while not queued")
        return outcome

    def job_status(self, job_id: str) -> dict:
        job = self.jobs.get(job_id)
        if job is None:
            raise ScanJobNotFoundError(job_id)
        data = job_to_dict(job)
        item = self.queue.status(job_id)
        data["queue"] = item.to_dict() if item else None
        return data

    def queue_status(self) -> dict:
        return self.queue.snapshot()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.wait_idle(timeout)

    def recover(self) -> List[QueueItem]:
        """Startup hook: re-queue jobs a previous process left unfinished."""
        items = self.queue.recover(self.jobs.find_recoverable())
        self.jobs.cleanup_old()
        return items

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.queue.shutdown(timeout)

    # --- interactive scans (held for confirmation) ---

    def start_interactive_scan(self, library_id: str) -> Tuple[str, ScanResult]:
        """Diff a library and hold the result until it is applied or discarded."""
        self.pending.expire()
        with Session(self.engine) as session:
            result = scan_library(
                Repository(session),
                library_id,
                ignore_patterns=self.config.scanner.ignore_patterns,
            )
        scan_id = new_scan_id(library_id)
        self.pending.set(scan_id, result)
        self.logger.info(f"[SCAN] held {scan_id} for confirmation")
        return scan_id, result

    def apply_pending(self, scan_id: str, library_id: Optional[str] = None) -> ApplyResult:
        result = self.pending.get(scan_id)
        if result is None or (library_id and result.library_id != library_id):
            raise PendingScanNotFoundError(scan_id)
        with Session(self.engine) as session:
            applied = apply_scan_results(Repository(session), result)
        self.pending.delete(scan_id)
        if applied.deleted_ids:
            self._files_deleted(applied.deleted_ids)
        return applied

    def discard_pending(self, scan_id: str, library_id: Optional[str] = None) -> None:
        result = self.pending.get(scan_id)
        if result is None or (library_id and result.library_id != library_id):
            raise PendingScanNotFoundError(scan_id)
        self.pending.delete(scan_id)
        self.logger.info(f"[SCAN] discarded {scan_id}")
