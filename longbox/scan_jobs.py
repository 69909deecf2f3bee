"""Persistence of scan jobs: stage transitions, progress counters and log entries."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select, col

from .logging_config import get_logger
from .models import LogLevel, OperationKind, ScanJob, ScanJobLog, ScanStage
from .utils import utc_now

TERMINAL_STAGES = (ScanStage.COMPLETE, ScanStage.CANCELLED, ScanStage.FAILED)

PROGRESS_FIELDS = frozenset(
    {
        "discovered_files",
        "orphaned_files",
        "indexed_files",
        "linked_files",
        "series_created",
        "covers_extracted",
        "covers_cached",
        "total_files",
        "error_count",
    }
)

# Operation that resumes a job interrupted in a given stage. Queued jobs that
# never started resume with the operation they were created for.
RECOVERY_OPERATIONS: Dict[ScanStage, OperationKind] = {
    ScanStage.DISCOVERING: OperationKind.SCAN,
    ScanStage.CLEANING: OperationKind.SCAN,
    ScanStage.INDEXING: OperationKind.SCAN,
    ScanStage.LINKING: OperationKind.SCAN,
    ScanStage.COVERS: OperationKind.COVERS,
}


class ScanJobNotFoundError(KeyError):
    """No scan job with the requested id."""


def job_to_dict(job: ScanJob, include_logs: bool = True) -> dict:
    data = {
        "id": job.id,
        "library_id": job.library_id,
        "operation": job.operation.value,
        "stage": job.stage.value,
        "current_message": job.current_message,
        "progress": {name: getattr(job, name) for name in sorted(PROGRESS_FIELDS)},
        "error": job.error,
        "queued_at": job.queued_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if include_logs:
        data["logs"] = [
            {
                "stage": entry.stage.value,
                "message": entry.message,
                "detail": entry.detail,
                "level": entry.level.value,
                "created_at": entry.created_at.isoformat(),
            }
            for entry in job.logs
        ]
    return data


class ScanJobService:
    """Reads and writes ScanJob rows, one short session per call."""

    def __init__(self, engine: Engine, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.logger = logger or get_logger(__name__)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _load(self, session: Session, job_id: str) -> ScanJob:
        job = session.get(ScanJob, job_id)
        if job is None:
            raise ScanJobNotFoundError(job_id)
        return job

    def _log(
        self,
        session: Session,
        job: ScanJob,
        message: str,
        detail: Optional[str] = None,
        level: LogLevel = LogLevel.INFO,
        stage: Optional[ScanStage] = None,
    ) -> None:
        session.add(
            ScanJobLog(
                job_id=job.id,
                stage=stage or job.stage,
                message=message,
                detail=detail,
                level=level,
            )
        )

    def get_active(self, library_id: str) -> Optional[ScanJob]:
        with self._session() as session:
            statement = (
                select(ScanJob)
                .where(
                    ScanJob.library_id == library_id,
                    col(ScanJob.stage).not_in(TERMINAL_STAGES),
                )
                .order_by(col(ScanJob.queued_at).desc())
            )
            return session.exec(statement).first()

    def create(self, library_id: str, operation: OperationKind = OperationKind.SCAN) -> ScanJob:
        """Create a queued job, or return the library's job that is still active."""
        with self._session() as session:
            statement = select(ScanJob).where(
                ScanJob.library_id == library_id,
                col(ScanJob.stage).not_in(TERMINAL_STAGES),
            )
            existing = session.exec(statement).first()
            if existing is not None:
                return existing

            job = ScanJob(library_id=library_id, operation=operation)
            session.add(job)
            session.flush()
            self._log(session, job, f"Job created ({operation.value})")
            session.commit()
            return job

    def get(self, job_id: str) -> Optional[ScanJob]:
        with self._session() as session:
            statement = (
                select(ScanJob)
                .where(ScanJob.id == job_id)
                .options(selectinload(ScanJob.logs))
            )
            return session.exec(statement).first()

    def list_jobs(self, library_id: Optional[str] = None, limit: int = 20) -> List[ScanJob]:
        with self._session() as session:
            statement = select(ScanJob)
            if library_id:
                statement = statement.where(ScanJob.library_id == library_id)
            statement = statement.order_by(col(ScanJob.queued_at).desc()).limit(limit)
            return list(session.exec(statement).all())

    def delete(self, job_id: str) -> None:
        with self._session() as session:
            job = session.get(ScanJob, job_id)
            if job is not None:
                session.delete(job)
                session.commit()

    def set_stage(self, job_id: str, stage: ScanStage, message: Optional[str] = None) -> ScanJob:
        with self._session() as session:
            job = self._load(session, job_id)
            job.stage = stage
            job.current_message = message
            if job.started_at is None:
                job.started_at = utc_now()
            session.add(job)
            if message:
                self._log(session, job, message)
            session.commit()
            return job

    def update_progress(self, job_id: str, message: Optional[str] = None, **counters: int) -> None:
        unknown = set(counters) - PROGRESS_FIELDS
        if unknown:
            raise ValueError(f"Unknown progress counters: {sorted(unknown)}")
        with self._session() as session:
            job = self._load(session, job_id)
            for name, value in counters.items():
                setattr(job, name, value)
            if message is not None:
                job.current_message = message
            session.add(job)
            session.commit()

    def add_log(
        self,
        job_id: str,
        message: str,
        detail: Optional[str] = None,
        level: LogLevel = LogLevel.INFO,
    ) -> None:
        with self._session() as session:
            job = self._load(session, job_id)
            self._log(session, job, message, detail, level)
            session.commit()

    def _finish(
        self,
        job_id: str,
        stage: ScanStage,
        message: str,
        level: LogLevel,
        error: Optional[str] = None,
    ) -> ScanJob:
        with self._session() as session:
            job = self._load(session, job_id)
            log_stage = job.stage
            job.stage = stage
            job.current_message = message
            job.completed_at = utc_now()
            if error is not None:
                job.error = error
            session.add(job)
            self._log(session, job, message, error, level, stage=log_stage)
            session.commit()
            return job

    def complete(self, job_id: str, message: str = "Scan complete") -> ScanJob:
        return self._finish(job_id, ScanStage.COMPLETE, message, LogLevel.SUCCESS)

    def fail(self, job_id: str, error: str) -> ScanJob:
        return self._finish(job_id, ScanStage.FAILED, "Scan failed", LogLevel.ERROR, error)

    def cancel(self, job_id: str, message: str = "Cancelled by user") -> ScanJob:
        return self._finish(job_id, ScanStage.CANCELLED, message, LogLevel.WARNING)

    def find_recoverable(self) -> List[Tuple[str, OperationKind]]:
        """Reset jobs left active by a previous process and say how to resume them.

        Every non-terminal job goes back to queued with a log entry; the returned
        (job_id, operation) pairs are in original queue order.
        """
        recoverable: List[Tuple[str, OperationKind]] = []
        with self._session() as session:
            statement = (
                select(ScanJob)
                .where(col(ScanJob.stage).not_in(TERMINAL_STAGES))
                .order_by(ScanJob.queued_at)
            )
            for job in session.exec(statement).all():
                if job.stage == ScanStage.QUEUED:
                    operation = job.operation
                    message = "Re-queued after server restart (never started)"
                else:
                    operation = RECOVERY_OPERATIONS[job.stage]
                    message = (
                        f"Interrupted by server restart during {job.stage.value}; "
                        f"re-queued as {operation.value}"
                    )
                self._log(session, job, message, level=LogLevel.WARNING)
                job.operation = operation
                job.stage = ScanStage.QUEUED
                job.current_message = message
                session.add(job)
                recoverable.append((job.id, operation))
            session.commit()

        if recoverable:
            self.logger.warning(f"Found {len(recoverable)} interrupted scan job(s)")
        return recoverable

    def cleanup_old(self, keep_per_library: int = 5) -> int:
        """Delete finished jobs beyond the newest keep_per_library of each library."""
        deleted = 0
        with self._session() as session:
            statement = (
                select(ScanJob)
                .where(col(ScanJob.stage).in_(TERMINAL_STAGES))
                .order_by(ScanJob.library_id, col(ScanJob.queued_at).desc())
            )
            seen: Dict[str, int] = {}
            for job in session.exec(statement).all():
                seen[job.library_id] = seen.get(job.library_id, 0) + 1
                if seen[job.library_id] > keep_per_library:
                    session.delete(job)
                    deleted += 1
            session.commit()
        if deleted:
            self.logger.info(f"Removed {deleted} old scan job(s)")
        return deleted
