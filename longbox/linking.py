"""Series linking collaborator.

A file joins the series named in its metadata when it has one, otherwise the
series named after the folder it sits in. Series are matched on a normalized
name and created on first use.
"""

from __future__ import annotations

import dataclasses
from typing import Optional, Protocol

from .logging_config import get_logger
from .path_utils import folder_name
from .repository import Repository

logger = get_logger(__name__)


@dataclasses.dataclass
class LinkResult:
    linked: bool
    created: bool = False
    match_type: Optional[str] = None  # "metadata" or "folder"
    series_id: Optional[str] = None


class SeriesLinker(Protocol):
    def link(self, repo: Repository, file_id: str, folder_only: bool = False) -> LinkResult:
        ...


class FolderSeriesLinker:
    def link(self, repo: Repository, file_id: str, folder_only: bool = False) -> LinkResult:
        comic_file = repo.get_file_with_metadata(file_id)
        if comic_file is None or comic_file.series_id is not None:
            return LinkResult(False)

        meta = comic_file.metadata_rel
        name: Optional[str] = None
        publisher: Optional[str] = None
        match_type = "folder"
        if not folder_only and meta is not None and meta.series and meta.series.strip():
            name, publisher, match_type = meta.series.strip(), meta.publisher, "metadata"
        else:
            name = folder_name(comic_file.relative_path)

        if not name:
            return LinkResult(False)

        created = False
        series = repo.get_series_by_name(name)
        if series is None:
            series = repo.create_series(name, publisher=publisher)
            created = True
            logger.info(f"[+] Series: {series.name}")

        repo.link_file_to_series(comic_file, series)
        return LinkResult(True, created, match_type, series.id)
