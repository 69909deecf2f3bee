"""Metadata extraction collaborator: reads sidecar metadata into FileMetadata rows."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .archive import get_archive
from .comicinfo import ComicInfoParsed, read_comicinfo
from .logging_config import get_logger
from .models import FileStatus
from .repository import Repository
from .utils import short_path

logger = get_logger(__name__)


class MetadataExtractor(Protocol):
    def refresh(self, repo: Repository, file_id: str) -> bool:
        """Extract metadata for one file. Returns False if the file is gone.

        Raises on unreadable archives; callers count that as a per-file error.
        """
        ...


class ComicInfoMetadataExtractor:
    """Reads ComicInfo.xml and the page count from the archive itself.

    A successful extraction promotes a pending file to indexed.
    """

    def refresh(self, repo: Repository, file_id: str) -> bool:
        comic_file = repo.get_file(file_id)
        if comic_file is None:
            return False

        path = Path(comic_file.path)
        with get_archive(path) as archive:
            page_count = len(archive.list_images())
            info = read_comicinfo(archive)

        fields = (info or ComicInfoParsed()).model_dump()
        # Trust the archive over ComicInfo's PageCount
        fields.pop("page_count", None)
        repo.upsert_metadata(
            file_id,
            page_count=page_count,
            has_comic_info=info is not None,
            **fields,
        )
        if comic_file.status == FileStatus.PENDING:
            repo.set_status(comic_file, FileStatus.INDEXED)

        logger.debug(f"✓ {short_path(path)} ({page_count} pages)")
        return True
