"""Cover thumbnails for Longbox.

Generates JPEG thumbnails from each archive's cover page, storing them under
`covers/{file_id}.jpg`.
"""

from __future__ import annotations

import dataclasses
from io import BytesIO
from pathlib import Path
from typing import Iterable, Protocol

from PIL import Image

from .archive import list_entries, read_entry
from .config import CoverConfig
from .logging_config import get_logger
from .repository import Repository
from .utils import short_path

logger = get_logger(__name__)


@dataclasses.dataclass
class CoverBatchResult:
    extracted: int = 0
    cached: int = 0
    failed: int = 0


class CoverExtractor(Protocol):
    def extract_batch(self, repo: Repository, file_ids: Iterable[str]) -> CoverBatchResult:
        ...


def _save_thumbnail(
    img_bytes: bytes,
    thumb_path: Path,
    width: int,
    height: int,
    quality: int,
) -> None:
    thumb_path.parent.mkdir(parents=True, exist_ok=True)
    with Image.open(BytesIO(img_bytes)) as im:
        im = im.convert("RGB")
        im.thumbnail((width, height))
        im.save(thumb_path, format="JPEG", quality=quality, optimize=True)


class ThumbnailCoverExtractor:
    """Pillow-backed cover extractor.

    A file whose thumbnail already exists counts as cached unless regenerate is set.
    """

    def __init__(self, covers_dir: Path, config: CoverConfig | None = None, regenerate: bool = False):
        self.covers_dir = Path(covers_dir)
        self.config = config or CoverConfig()
        self.regenerate = regenerate

    def cover_path(self, file_id: str) -> Path:
        return self.covers_dir / f"{file_id}.jpg"

    def extract_batch(self, repo: Repository, file_ids: Iterable[str]) -> CoverBatchResult:
        result = CoverBatchResult()
        for file_id in file_ids:
            comic_file = repo.get_file(file_id)
            if comic_file is None:
                continue

            thumb_path = self.cover_path(file_id)
            if not self.regenerate and comic_file.cover_generated and thumb_path.exists():
                result.cached += 1
                continue

            path = Path(comic_file.path)
            try:
                listing = list_entries(path)
                if listing.cover_path is None:
                    raise ValueError("no images in archive")
                _save_thumbnail(
                    read_entry(path, listing.cover_path),
                    thumb_path,
                    self.config.width,
                    self.config.height,
                    self.config.quality,
                )
            except Exception as exc:
                logger.error(f"✗ Cover for {short_path(path)}: {exc}")
                result.failed += 1
                continue

            repo.set_cover_generated(comic_file, True)
            result.extracted += 1
        return result

    def delete_covers(self, file_ids: Iterable[str]) -> int:
        """Delete cover files for removed comic files. Returns count deleted."""
        deleted = 0
        for file_id in file_ids:
            thumb_path = self.cover_path(file_id)
            if thumb_path.exists():
                try:
                    thumb_path.unlink()
                    deleted += 1
                except OSError as exc:
                    logger.error(f"Failed to delete cover {thumb_path}: {exc}")
        return deleted
