"""Alembic migration helpers for Longbox.

This is the only module in the project that imports alembic directly.
Everything else (CLI, serve) goes through the functions below.
"""

from __future__ import annotations

import shutil
import sqlite3
from pathlib import Path
from typing import Optional

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory

from .config import PROJECT_ROOT
from .database import DB_PATH


def _alembic_cfg(db_path: Path) -> AlembicConfig:
    """Build an AlembicConfig pointing at our alembic.ini and the given database."""
    cfg = AlembicConfig(str(PROJECT_ROOT / "alembic.ini"))
    # Absolute script_location so it works from any working directory
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return cfg


def _backup_db(db_path: Path) -> None:
    """Copy longbox.db -> longbox.db.bak (overwrite previous backup)."""
    if db_path.exists():
        shutil.copy2(db_path, db_path.with_suffix(".db.bak"))


def _alembic_version_exists(db_path: Path) -> bool:
    if not db_path.exists():
        return False
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'"
        )
        return cur.fetchone() is not None
    finally:
        conn.close()


def run_migrations(db_path: Path = DB_PATH, backup: bool = True) -> None:
    """Run ``alembic upgrade head``, copying the database aside first."""
    if backup:
        _backup_db(db_path)
    alembic_command.upgrade(_alembic_cfg(db_path), "head")


def stamp_if_needed(db_path: Path = DB_PATH) -> None:
    """Stamp a database created by ``init_db`` (create_all) to the current head.

    No-op when the database is missing or already carries a version.
    """
    if not db_path.exists() or _alembic_version_exists(db_path):
        return
    alembic_command.stamp(_alembic_cfg(db_path), "head")


def get_status(db_path: Path = DB_PATH) -> tuple[Optional[str], str]:
    """Return (current_revision, head_revision).

    current_revision is None when the DB does not exist or was never stamped.
    """
    script = ScriptDirectory.from_config(_alembic_cfg(db_path))
    head_rev: str = script.get_current_head() or "unknown"

    if not _alembic_version_exists(db_path):
        return None, head_rev

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT version_num FROM alembic_version").fetchone()
        return (row[0] if row else None), head_rev
    finally:
        conn.close()
