"""Database connection and session management using SQLModel."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from .config import DATA_DIR

DB_PATH = DATA_DIR / "longbox.db"


def create_db_engine(db_path: Path) -> Engine:
    """Build a SQLite engine for db_path.

    check_same_thread=False lets the queue worker thread and the API share it.
    """
    return create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )


engine = create_db_engine(DB_PATH)


def get_engine() -> Engine:
    """Return the global engine instance."""
    return engine


def init_db(db_engine: Optional[Engine] = None) -> None:
    """Create database tables (WAL mode, foreign keys on)."""
    # Import models to ensure they are registered with SQLModel.metadata
    from . import models  # noqa: F401

    target = db_engine or engine
    with target.connect() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
        conn.exec_driver_sql("PRAGMA foreign_keys=ON;")

    SQLModel.metadata.create_all(target)
