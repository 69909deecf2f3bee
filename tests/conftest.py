"""Shared fixtures: a throwaway database, a library folder and CBZ builders."""

import io
import zipfile
from pathlib import Path
from typing import Iterable, Optional

import pytest
from PIL import Image
from sqlmodel import Session

from longbox.archive import clear_listing_cache
from longbox.database import create_db_engine, init_db
from longbox.repository import Repository


def png_bytes(color: str = "red", size: tuple[int, int] = (10, 10)) -> bytes:
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_cbz(
    path: Path,
    pages: Iterable[str] = ("page001.png",),
    comic_info: Optional[str] = None,
    extra: Optional[dict] = None,
) -> Path:
    """Create a CBZ with one tiny PNG per page name."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name in pages:
            zf.writestr(name, png_bytes())
        if comic_info is not None:
            zf.writestr("ComicInfo.xml", comic_info)
        for name, data in (extra or {}).items():
            zf.writestr(name, data)
    return path


@pytest.fixture(autouse=True)
def _fresh_listing_cache():
    clear_listing_cache()
    yield
    clear_listing_cache()


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(tmp_path / "longbox.db")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as s:
        yield s


@pytest.fixture
def repo(session):
    return Repository(session)


@pytest.fixture
def library_root(tmp_path):
    root = tmp_path / "comics"
    root.mkdir()
    return root


@pytest.fixture
def library(repo, library_root):
    lib = repo.create_library("Test Library", library_root)
    repo.commit()
    return lib
