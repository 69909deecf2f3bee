"""Scan orchestrator: runs queued scan jobs stage by stage.

A full scan (OperationKind.SCAN) runs five stages in order:

1. discovering - walk the library root
2. cleaning    - diff against the index and apply the changes right away
3. indexing    - extract metadata for files that lack fresh metadata
4. linking     - attach files to series, then a folder-only pass for stragglers
5. covers      - generate cover thumbnails

OperationKind.COVERS runs the covers stage alone. The cancellation token is
checked before every stage and between batches; a cancelled job stops where it
is and keeps the work already done. Any other error fails the job and is
re-raised for the job queue to record.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .covers import CoverExtractor
from .job_queue import CancellationToken, Handler
from .linking import SeriesLinker
from .logging_config import get_logger
from .metadata import MetadataExtractor
from .models import LogLevel, OperationKind, ScanStage
from .repository import Repository
from .scan_jobs import ScanJobNotFoundError, ScanJobService
from .scanner import (
    DEFAULT_IGNORE_PATTERNS,
    DiscoveryResult,
    LibraryNotFoundError,
    LibraryPathError,
    apply_scan_results,
    discover_files,
    scan_library,
    verify_library_path,
)


class ScanCancelled(Exception):
    """Raised inside a run when its cancellation token is set."""


@dataclasses.dataclass
class _Run:
    job_id: str
    library_id: str
    token: CancellationToken
    discovery: Optional[DiscoveryResult] = None
    errors: int = 0
    discovered: int = 0
    indexed: int = 0
    linked: int = 0
    series_created: int = 0
    covers_extracted: int = 0
    covers_cached: int = 0


def _batches(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ScanOrchestrator:
    def __init__(
        self,
        engine: Engine,
        jobs: ScanJobService,
        metadata: MetadataExtractor,
        linker: SeriesLinker,
        covers: CoverExtractor,
        batch_size: int = 50,
        ignore_patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS,
        on_files_deleted: Optional[Callable[[List[str]], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.engine = engine
        self.jobs = jobs
        self.metadata = metadata
        self.linker = linker
        self.covers = covers
        self.batch_size = batch_size
        self.ignore_patterns = tuple(ignore_patterns)
        self.on_files_deleted = on_files_deleted
        self.logger = logger or get_logger(__name__)

    @property
    def handlers(self) -> Dict[OperationKind, Handler]:
        """Dispatch table for the job queue."""
        return {
            OperationKind.SCAN: self.run_scan,
            OperationKind.COVERS: self.run_covers,
        }

    def run_scan(self, job_id: str, token: CancellationToken) -> None:
        self._run(
            job_id,
            token,
            [
                self._discover,
                self._clean,
                self._index,
                self._link,
                self._covers,
            ],
        )

    def run_covers(self, job_id: str, token: CancellationToken) -> None:
        self._run(job_id, token, [self._covers], resume=True)

    def _run(
        self, job_id: str, token: CancellationToken, stages: list, resume: bool = False
    ) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            raise ScanJobNotFoundError(job_id)
        if job.stage.is_terminal:
            self.logger.info(f"Job {job_id} already {job.stage.value}; nothing to do")
            return

        run = _Run(job_id=job_id, library_id=job.library_id, token=token)
        if resume:
            # Carry over counters of the stages that ran before
            run.discovered = job.discovered_files
            run.indexed = job.indexed_files
            run.linked = job.linked_files
            run.series_created = job.series_created
            run.covers_extracted = job.covers_extracted
            run.covers_cached = job.covers_cached
            run.errors = job.error_count
        try:
            for stage in stages:
                self._check_cancelled(run)
                stage(run)
        except ScanCancelled:
            self.jobs.cancel(job_id)
            self.logger.warning(f"[SCAN] job {job_id} cancelled")
            return
        except Exception as exc:
            self.jobs.fail(job_id, str(exc) or type(exc).__name__)
            self.logger.error(f"✗ [SCAN] job {job_id} failed: {exc}")
            raise

        message = (
            f"Scan complete: {run.discovered} discovered, {run.indexed} indexed, "
            f"{run.linked} linked, {run.covers_extracted} covers extracted, "
            f"{run.covers_cached} cached, {run.errors} errors"
        )
        self.jobs.complete(job_id, message)
        self.logger.info(f"✓ [SCAN] {message}")

    def _check_cancelled(self, run: _Run) -> None:
        if run.token.cancelled:
            raise ScanCancelled(run.job_id)

    def _library_root(self, repo: Repository, library_id: str) -> Path:
        library = repo.get_library(library_id)
        if library is None:
            raise LibraryNotFoundError(f"Library not found: {library_id}")
        root = Path(library.root_path)
        problem = verify_library_path(root)
        if problem:
            raise LibraryPathError(problem)
        return root

    # --- stages ---

    def _discover(self, run: _Run) -> None:
        self.jobs.set_stage(run.job_id, ScanStage.DISCOVERING, "Discovering files")
        with Session(self.engine) as session:
            root = self._library_root(Repository(session), run.library_id)

        run.discovery = discover_files(root, include_hash=False, ignore_patterns=self.ignore_patterns)
        run.discovered = len(run.discovery.files)
        run.errors += len(run.discovery.errors)
        self.jobs.update_progress(
            run.job_id,
            message=f"Found {run.discovered} files",
            discovered_files=run.discovered,
            total_files=run.discovered,
            error_count=run.errors,
        )
        if run.discovery.errors:
            self.jobs.add_log(
                run.job_id,
                f"{len(run.discovery.errors)} paths could not be read",
                detail="\n".join(f"{e.path}: {e.message}" for e in run.discovery.errors[:20]),
                level=LogLevel.WARNING,
            )

    def _clean(self, run: _Run) -> None:
        self.jobs.set_stage(run.job_id, ScanStage.CLEANING, "Comparing files with the index")
        with Session(self.engine) as session:
            repo = Repository(session)
            result = scan_library(
                repo,
                run.library_id,
                discovered=run.discovery,
                ignore_patterns=self.ignore_patterns,
            )
            # Discovery errors were already counted
            run.errors += len(result.errors) - len(run.discovery.errors if run.discovery else [])

            if not result.has_changes:
                self.jobs.update_progress(run.job_id, message="No changes", error_count=run.errors)
                self.jobs.add_log(run.job_id, "Index is up to date")
                return

            applied = apply_scan_results(repo, result)

        if applied.deleted_ids and self.on_files_deleted:
            self.on_files_deleted(applied.deleted_ids)

        self.jobs.update_progress(
            run.job_id,
            message=f"{applied.added} new, {applied.moved} moved, {applied.orphaned} orphaned",
            orphaned_files=applied.orphaned,
            error_count=run.errors,
        )
        self.jobs.add_log(
            run.job_id,
            f"Applied changes: {applied.added} added, {applied.moved} moved, "
            f"{applied.orphaned} orphaned, {applied.restored} restored",
            level=LogLevel.SUCCESS,
        )

    def _index(self, run: _Run) -> None:
        self.jobs.set_stage(run.job_id, ScanStage.INDEXING, "Extracting metadata")
        with Session(self.engine) as session:
            file_ids = Repository(session).ids_needing_metadata(run.library_id)

        total = len(file_ids)
        done = 0
        for batch in _batches(file_ids, self.batch_size):
            self._check_cancelled(run)
            with Session(self.engine) as session:
                repo = Repository(session)
                for file_id in batch:
                    try:
                        if self.metadata.refresh(repo, file_id):
                            run.indexed += 1
                        repo.commit()
                    except Exception as exc:
                        repo.rollback()
                        run.errors += 1
                        self.logger.warning(f"✗ Metadata for {file_id}: {exc}")
            done += len(batch)
            self.jobs.update_progress(
                run.job_id,
                message=f"Indexed {done}/{total}",
                indexed_files=run.indexed,
                error_count=run.errors,
            )

        self.jobs.add_log(run.job_id, f"Indexed {run.indexed} of {total} files")

    def _link_batch(self, run: _Run, batch: Sequence[str], folder_only: bool) -> None:
        with Session(self.engine) as session:
            repo = Repository(session)
            for file_id in batch:
                try:
                    result = self.linker.link(repo, file_id, folder_only=folder_only)
                    repo.commit()
                except Exception as exc:
                    repo.rollback()
                    run.errors += 1
                    self.logger.warning(f"✗ Series link for {file_id}: {exc}")
                    continue
                if result.linked:
                    run.linked += 1
                if result.created:
                    run.series_created += 1

    def _link(self, run: _Run) -> None:
        self.jobs.set_stage(run.job_id, ScanStage.LINKING, "Linking series")
        with Session(self.engine) as session:
            file_ids = Repository(session).ids_unlinked(run.library_id)

        total = len(file_ids)
        done = 0
        for batch in _batches(file_ids, self.batch_size):
            self._check_cancelled(run)
            self._link_batch(run, batch, folder_only=False)
            done += len(batch)
            self.jobs.update_progress(
                run.job_id,
                message=f"Linked {done}/{total}",
                linked_files=run.linked,
                series_created=run.series_created,
                error_count=run.errors,
            )

        self._check_cancelled(run)
        with Session(self.engine) as session:
            stragglers = Repository(session).ids_unlinked(run.library_id)
        for batch in _batches(stragglers, self.batch_size):
            self._check_cancelled(run)
            self._link_batch(run, batch, folder_only=True)
        if stragglers:
            self.jobs.update_progress(
                run.job_id,
                linked_files=run.linked,
                series_created=run.series_created,
                error_count=run.errors,
            )

        self.jobs.add_log(
            run.job_id,
            f"Linked {run.linked} files, created {run.series_created} series",
        )

    def _covers(self, run: _Run) -> None:
        self.jobs.set_stage(run.job_id, ScanStage.COVERS, "Extracting covers")
        with Session(self.engine) as session:
            repo = Repository(session)
            self._library_root(repo, run.library_id)
            file_ids = repo.ids_for_covers(run.library_id)

        total = len(file_ids)
        done = 0
        for batch in _batches(file_ids, self.batch_size):
            self._check_cancelled(run)
            with Session(self.engine) as session:
                repo = Repository(session)
                result = self.covers.extract_batch(repo, batch)
                repo.commit()
            run.covers_extracted += result.extracted
            run.covers_cached += result.cached
            run.errors += result.failed
            done += len(batch)
            self.jobs.update_progress(
                run.job_id,
                message=f"Covers {done}/{total}",
                covers_extracted=run.covers_extracted,
                covers_cached=run.covers_cached,
                error_count=run.errors,
            )

        self.jobs.add_log(
            run.job_id,
            f"Covers: {run.covers_extracted} extracted, {run.covers_cached} cached",
        )
