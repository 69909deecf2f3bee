"""Data Access Layer for Longbox.

Encapsulates database operations using SQLModel/SQLAlchemy. Methods flush but
never commit; callers decide when a unit of work is done via commit().
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import selectinload
from sqlmodel import Session, select, col, func, or_

from .models import ComicFile, FileMetadata, FileStatus, Library, Series
from .path_utils import to_relative
from .utils import utc_now

LIVE_STATUSES = (FileStatus.PENDING, FileStatus.INDEXED)


def normalize_series_name(name: str) -> str:
    """Case- and whitespace-insensitive key for series matching."""
    return " ".join(name.lower().split())


class Repository:
    """Data access layer over one session.

    Comic files keep both their absolute path and the path relative to their
    library root; the relative path is what scans match on.
    """

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        """Commit the current transaction. Callers control when to commit."""
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # --- Libraries ---

    def create_library(self, name: str, root_path: Path) -> Library:
        library = Library(name=name, root_path=str(Path(root_path).resolve()))
        self.session.add(library)
        self.session.flush()
        return library

    def get_library(self, library_id: str) -> Optional[Library]:
        return self.session.get(Library, library_id)

    def get_library_by_path(self, root_path: Path) -> Optional[Library]:
        resolved = str(Path(root_path).resolve())
        return self.session.exec(select(Library).where(Library.root_path == resolved)).first()

    def get_or_create_library(self, name: str, root_path: Path) -> Library:
        library = self.get_library_by_path(root_path)
        if library:
            return library
        return self.create_library(name, root_path)

    def list_libraries(self) -> List[Library]:
        return list(self.session.exec(select(Library).order_by(Library.name)).all())

    # --- Comic files ---

    def get_file(self, file_id: str) -> Optional[ComicFile]:
        return self.session.get(ComicFile, file_id)

    def list_files(
        self, library_id: str, statuses: Optional[Iterable[FileStatus]] = None
    ) -> List[ComicFile]:
        statement = select(ComicFile).where(ComicFile.library_id == library_id)
        if statuses is not None:
            statement = statement.where(col(ComicFile.status).in_(list(statuses)))
        return list(self.session.exec(statement.order_by(ComicFile.relative_path)).all())

    def get_file_by_relative_path(self, library_id: str, relative_path: str) -> Optional[ComicFile]:
        statement = select(ComicFile).where(
            ComicFile.library_id == library_id,
            ComicFile.relative_path == relative_path,
        )
        return self.session.exec(statement).first()

    def add_file(
        self,
        *,
        library: Library,
        path: Path,
        size: int,
        modified_at: datetime,
        file_hash: Optional[str],
        status: FileStatus = FileStatus.PENDING,
    ) -> ComicFile:
        """Insert a comic file record; the path must lie under the library root."""
        comic_file = ComicFile(
            library_id=library.id,
            path=str(path),
            relative_path=to_relative(path, Path(library.root_path)),
            filename=path.name,
            extension=path.suffix.lower().lstrip("."),
            size=size,
            modified_at=modified_at,
            hash=file_hash,
            status=status,
        )
        self.session.add(comic_file)
        self.session.flush()
        return comic_file

    def move_file(self, comic_file: ComicFile, library: Library, new_path: Path) -> ComicFile:
        """Point an existing record at a new location, keeping its identity."""
        comic_file.path = str(new_path)
        comic_file.relative_path = to_relative(new_path, Path(library.root_path))
        comic_file.filename = new_path.name
        comic_file.extension = new_path.suffix.lower().lstrip(".")
        comic_file.updated_at = utc_now()
        self.session.add(comic_file)
        self.session.flush()
        return comic_file

    def set_status(self, comic_file: ComicFile, status: FileStatus) -> None:
        comic_file.status = status
        comic_file.updated_at = utc_now()
        self.session.add(comic_file)
        self.session.flush()

    def delete_file(self, comic_file: ComicFile) -> None:
        self.session.delete(comic_file)
        self.session.flush()

    def set_cover_generated(self, comic_file: ComicFile, generated: bool = True) -> None:
        comic_file.cover_generated = generated
        self.session.add(comic_file)
        self.session.flush()

    def ids_needing_metadata(self, library_id: str) -> List[str]:
        """Live files with no metadata row, or one older than the file itself."""
        statement = (
            select(ComicFile.id)
            .join(FileMetadata, col(FileMetadata.file_id) == ComicFile.id, isouter=True)
            .where(
                ComicFile.library_id == library_id,
                col(ComicFile.status).in_(LIVE_STATUSES),
                or_(
                    col(FileMetadata.id).is_(None),
                    col(FileMetadata.extracted_at) < ComicFile.modified_at,
                ),
            )
            .order_by(ComicFile.relative_path)
        )
        return list(self.session.exec(statement).all())

    def ids_unlinked(self, library_id: str) -> List[str]:
        statement = (
            select(ComicFile.id)
            .where(
                ComicFile.library_id == library_id,
                col(ComicFile.status).in_(LIVE_STATUSES),
                col(ComicFile.series_id).is_(None),
            )
            .order_by(ComicFile.relative_path)
        )
        return list(self.session.exec(statement).all())

    def ids_for_covers(self, library_id: str) -> List[str]:
        statement = select(ComicFile.id).where(
            ComicFile.library_id == library_id,
            col(ComicFile.status).in_(LIVE_STATUSES),
        )
        return list(self.session.exec(statement.order_by(ComicFile.relative_path)).all())

    def count_by_status(self, library_id: str) -> Dict[FileStatus, int]:
        statement = (
            select(ComicFile.status, func.count())
            .where(ComicFile.library_id == library_id)
            .group_by(ComicFile.status)
        )
        counts = {status: 0 for status in FileStatus}
        for status, count in self.session.exec(statement).all():
            counts[FileStatus(status)] = count
        return counts

    def count_covers_generated(self, library_id: str) -> int:
        statement = select(func.count()).select_from(ComicFile).where(
            ComicFile.library_id == library_id,
            ComicFile.cover_generated == True,  # noqa: E712
        )
        return int(self.session.exec(statement).one())

    def total_size(self, library_id: str) -> int:
        statement = select(func.coalesce(func.sum(ComicFile.size), 0)).where(
            ComicFile.library_id == library_id
        )
        return int(self.session.exec(statement).one())

    # --- Metadata ---

    def get_metadata(self, file_id: str) -> Optional[FileMetadata]:
        return self.session.exec(
            select(FileMetadata).where(FileMetadata.file_id == file_id)
        ).first()

    def upsert_metadata(self, file_id: str, **fields) -> FileMetadata:
        """Replace the metadata row of a file; extracted_at is set to now."""
        meta = self.get_metadata(file_id)
        if meta is None:
            meta = FileMetadata(file_id=file_id)
        for key, value in fields.items():
            setattr(meta, key, value)
        meta.extracted_at = utc_now()
        self.session.add(meta)
        self.session.flush()
        return meta

    def get_file_with_metadata(self, file_id: str) -> Optional[ComicFile]:
        statement = (
            select(ComicFile)
            .where(ComicFile.id == file_id)
            .options(selectinload(ComicFile.metadata_rel))
        )
        return self.session.exec(statement).first()

    # --- Series ---

    def get_series_by_name(self, name: str) -> Optional[Series]:
        normalized = normalize_series_name(name)
        return self.session.exec(
            select(Series).where(Series.normalized_name == normalized)
        ).first()

    def create_series(self, name: str, publisher: Optional[str] = None) -> Series:
        series = Series(
            name=name.strip(),
            normalized_name=normalize_series_name(name),
            publisher=publisher,
        )
        self.session.add(series)
        self.session.flush()
        return series

    def link_file_to_series(self, comic_file: ComicFile, series: Series) -> None:
        comic_file.series_id = series.id
        comic_file.updated_at = utc_now()
        self.session.add(comic_file)
        self.session.flush()

    def count_series(self) -> int:
        return int(self.session.exec(select(func.count()).select_from(Series)).one())
