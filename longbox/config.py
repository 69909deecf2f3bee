"""Config management for Longbox.

Reads `config.ini` from DATA_DIR. DATA_DIR defaults to the project root and can
be overridden with the DATA_DIR environment variable (Docker, tests).
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
import sys
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)


def _get_project_root() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path(__file__).resolve().parents[1]


PROJECT_ROOT = _get_project_root()

# DATA_DIR holds all persistent state (config.ini, longbox.db, covers/, longbox.log).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"


@dataclasses.dataclass
class LibraryConfig:
    path: pathlib.Path
    name: str


@dataclasses.dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclasses.dataclass
class CoverConfig:
    width: int = 300
    height: int = 450
    quality: int = 85


@dataclasses.dataclass
class ScannerConfig:
    ignore_patterns: tuple[str, ...] = (".DS_Store", "Thumbs.db", "@eaDir")
    batch_size: int = 50


@dataclasses.dataclass
class QueueConfig:
    """Job queue capacities and pending scan expiry."""

    max_size: int = 20
    pending_ttl_minutes: int = 30


@dataclasses.dataclass
class ArchiveConfig:
    listing_cache_size: int = 500
    listing_cache_ttl_seconds: int = 300


@dataclasses.dataclass
class LongboxConfig:
    library: LibraryConfig
    server: ServerConfig = dataclasses.field(default_factory=ServerConfig)
    covers: CoverConfig = dataclasses.field(default_factory=CoverConfig)
    scanner: ScannerConfig = dataclasses.field(default_factory=ScannerConfig)
    queue: QueueConfig = dataclasses.field(default_factory=QueueConfig)
    archive: ArchiveConfig = dataclasses.field(default_factory=ArchiveConfig)
    data_dir: pathlib.Path = DATA_DIR

    @property
    def library_path(self) -> pathlib.Path:
        return self.library.path

    @property
    def server_host(self) -> str:
        return self.server.host

    @property
    def server_port(self) -> int:
        return self.server.port

    @property
    def database_path(self) -> pathlib.Path:
        return self.data_dir / "longbox.db"

    @property
    def covers_dir(self) -> pathlib.Path:
        return self.data_dir / "covers"


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


def load_config(config_path: Optional[pathlib.Path] = None) -> LongboxConfig:
    """Load configuration from config.ini.

    Defaults to `config.ini` in DATA_DIR. Missing sections fall back to defaults.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser()
    parser.read(path)

    lib_path = pathlib.Path(
        parser.get("library", "path", fallback="/path/to/comics")
    ).expanduser()
    lib_name = parser.get("library", "name", fallback="My Comic Library")

    server = ServerConfig(
        host=parser.get("server", "host", fallback="0.0.0.0"),
        port=parser.getint("server", "port", fallback=8080),
    )

    covers = CoverConfig(
        width=parser.getint("covers", "width", fallback=300),
        height=parser.getint("covers", "height", fallback=450),
        quality=parser.getint("covers", "quality", fallback=85),
    )

    scanner = ScannerConfig(
        ignore_patterns=_split_list(
            parser.get(
                "scanner",
                "ignore_patterns",
                fallback=".DS_Store,Thumbs.db,@eaDir",
            )
        ),
        batch_size=parser.getint("scanner", "batch_size", fallback=50),
    )

    queue = QueueConfig(
        max_size=parser.getint("queue", "max_size", fallback=20),
        pending_ttl_minutes=parser.getint("queue", "pending_ttl_minutes", fallback=30),
    )

    archive = ArchiveConfig(
        listing_cache_size=parser.getint("archive", "listing_cache_size", fallback=500),
        listing_cache_ttl_seconds=parser.getint(
            "archive", "listing_cache_ttl_seconds", fallback=300
        ),
    )

    if scanner.batch_size < 1:
        raise ValueError(f"scanner.batch_size must be positive, got {scanner.batch_size}")
    if queue.max_size < 1:
        raise ValueError(f"queue.max_size must be positive, got {queue.max_size}")

    return LongboxConfig(
        library=LibraryConfig(path=lib_path, name=lib_name),
        server=server,
        covers=covers,
        scanner=scanner,
        queue=queue,
        archive=archive,
        data_dir=path.parent,
    )


def write_default_config(
    config_path: pathlib.Path, library_path: pathlib.Path, library_name: str
) -> None:
    """Write a config.ini holding the defaults and the given library."""
    parser = configparser.ConfigParser()
    parser["library"] = {
        "path": str(library_path.expanduser()),
        "name": library_name,
    }
    parser["server"] = {"host": "0.0.0.0", "port": "8080"}
    parser["covers"] = {"width": "300", "height": "450", "quality": "85"}
    parser["scanner"] = {
        "ignore_patterns": ".DS_Store,Thumbs.db,@eaDir",
        "batch_size": "50",
    }
    parser["queue"] = {"max_size": "20", "pending_ttl_minutes": "30"}
    parser["archive"] = {
        "listing_cache_size": "500",
        "listing_cache_ttl_seconds": "300",
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as handle:
        parser.write(handle)
    logger.debug(f"Wrote default config to {config_path}")

