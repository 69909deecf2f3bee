"""SQLModel database models for Longbox."""

import enum
import uuid
from datetime import datetime
from typing import Optional, List

from sqlmodel import Field, SQLModel, Relationship

from .utils import utc_now


def _new_id() -> str:
    return str(uuid.uuid4())


class FileStatus(str, enum.Enum):
    """Lifecycle of an indexed comic file."""

    PENDING = "pending"
    INDEXED = "indexed"
    ORPHANED = "orphaned"
    QUARANTINED = "quarantined"


class ScanStage(str, enum.Enum):
    QUEUED = "queued"
    DISCOVERING = "discovering"
    CLEANING = "cleaning"
    INDEXING = "indexing"
    LINKING = "linking"
    COVERS = "covers"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStage.COMPLETE, ScanStage.CANCELLED, ScanStage.FAILED)


class OperationKind(str, enum.Enum):
    """Work a queued scan job performs."""

    SCAN = "scan"      # full five-stage pipeline
    COVERS = "covers"  # covers stage only


class LogLevel(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Library(SQLModel, table=True):
    __tablename__ = "libraries"
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    root_path: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=utc_now)

    files: List["ComicFile"] = Relationship(back_populates="library")


class Series(SQLModel, table=True):
    __tablename__ = "series"
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    normalized_name: str = Field(unique=True, index=True)
    publisher: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    files: List["ComicFile"] = Relationship(back_populates="series")


class ComicFile(SQLModel, table=True):
    __tablename__ = "comic_files"
    id: str = Field(default_factory=_new_id, primary_key=True)
    library_id: str = Field(foreign_key="libraries.id", index=True)
    path: str = Field(index=True)
    relative_path: str = Field(index=True)
    filename: str
    extension: str
    size: int
    modified_at: datetime
    hash: Optional[str] = Field(default=None, index=True)
    status: FileStatus = Field(default=FileStatus.PENDING, index=True)
    series_id: Optional[str] = Field(default=None, foreign_key="series.id", index=True)
    cover_generated: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    library: Optional[Library] = Relationship(back_populates="files")
    series: Optional[Series] = Relationship(back_populates="files")
    metadata_rel: Optional["FileMetadata"] = Relationship(
        back_populates="file",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "uselist": False},
    )


class FileMetadata(SQLModel, table=True):
    __tablename__ = "file_metadata"
    id: Optional[int] = Field(default=None, primary_key=True)
    file_id: str = Field(foreign_key="comic_files.id", unique=True)
    series: Optional[str] = None
    number: Optional[str] = None
    title: Optional[str] = None
    volume: Optional[int] = None
    year: Optional[int] = None
    publisher: Optional[str] = None
    writer: Optional[str] = None
    page_count: int = 0
    has_comic_info: bool = False
    extracted_at: datetime = Field(default_factory=utc_now)

    file: Optional[ComicFile] = Relationship(back_populates="metadata_rel")


class ScanJob(SQLModel, table=True):
    __tablename__ = "scan_jobs"
    id: str = Field(default_factory=_new_id, primary_key=True)
    library_id: str = Field(foreign_key="libraries.id", index=True)
    operation: OperationKind = OperationKind.SCAN
    stage: ScanStage = Field(default=ScanStage.QUEUED, index=True)
    current_message: Optional[str] = None

    # Progress counters
    discovered_files: int = 0
    orphaned_files: int = 0
    indexed_files: int = 0
    linked_files: int = 0
    series_created: int = 0
    covers_extracted: int = 0
    covers_cached: int = 0
    total_files: int = 0
    error_count: int = 0

    error: Optional[str] = None
    queued_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    logs: List["ScanJobLog"] = Relationship(
        back_populates="job",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "order_by": "ScanJobLog.id",
        },
    )


class ScanJobLog(SQLModel, table=True):
    __tablename__ = "scan_job_logs"
    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="scan_jobs.id", index=True)
    stage: ScanStage
    message: str
    detail: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    created_at: datetime = Field(default_factory=utc_now)

    job: Optional[ScanJob] = Relationship(back_populates="logs")
