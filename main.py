"""Longbox CLI entry point."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from sqlmodel import Session

from longbox.api import run_server
from longbox.archive import ArchiveError, list_entries, listing_cache
from longbox.config import DEFAULT_CONFIG_PATH, LongboxConfig, load_config, write_default_config
from longbox.covers import ThumbnailCoverExtractor
from longbox.database import get_engine, init_db
from longbox.job_queue import QueueFullError
from longbox.logging_config import setup_logging
from longbox.migrations import get_status, run_migrations, stamp_if_needed
from longbox.models import OperationKind
from longbox.pages import BackupRestoreError, PageOrder, delete_pages_from_archive, reorder_pages_in_archive
from longbox.repository import Repository
from longbox.scanner import LibraryPathError, get_library_stats
from longbox.service import ScanService


__version__ = "0.1.0"

app = typer.Typer(add_completion=False, help="Longbox comic library ingestion CLI")
pages_app = typer.Typer(add_completion=False, help="Inspect and rewrite pages of a CBZ")
app.add_typer(pages_app, name="pages")
logger = logging.getLogger("longbox")

STARTUP_BANNER = r"""
 _                    _
| |    ___  _ __   __| |__   _____  __
| |   / _ \| '_ \ / _` | '_ \ / _ \ \/ /
| |__| (_) | | | | (_| | |_) | (_) >  <
|_____\___/|_| |_|\__, |_.__/ \___/_/\_\
                  |___/
"""


def _ensure_config() -> LongboxConfig:
    try:
        return load_config()
    except FileNotFoundError:
        typer.echo("[ERROR] config.ini not found. Run: longbox init --library /path/to/comics")
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"[ERROR] Invalid config.ini: {exc}")
        raise typer.Exit(code=1)


def _build_service(config: LongboxConfig, regenerate_covers: bool = False) -> ScanService:
    init_db()
    covers = ThumbnailCoverExtractor(config.covers_dir, config.covers, regenerate=regenerate_covers)
    return ScanService(get_engine(), config, covers=covers)


def _library_id(service: ScanService, config: LongboxConfig) -> str:
    try:
        return service.ensure_library(config.library.name, config.library_path).id
    except LibraryPathError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)


def _run_job(service: ScanService, library_id: str, operation: OperationKind) -> dict:
    try:
        job = service.enqueue_scan(library_id, operation)
    except QueueFullError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)
    try:
        service.wait_idle()
    except KeyboardInterrupt:
        service.cancel_job(job.id)
        service.wait_idle(timeout=10)
    finally:
        service.shutdown(timeout=10)
    return service.job_status(job.id)


@app.command()
def init(
    library: Path = typer.Option(..., "--library", help="Path to your comics folder"),
    name: str = typer.Option("My Comic Library", "--name", help="Library name"),
) -> None:
    """Initialize config.ini with default settings."""
    config_path = DEFAULT_CONFIG_PATH
    write_default_config(config_path, library, name)
    typer.echo(f"[OK] Config created at {config_path}")


@app.command()
def scan() -> None:
    """Run the full scan pipeline (discover, clean, index, link, covers)."""
    setup_logging()

    config = _ensure_config()
    service = _build_service(config)
    status = _run_job(service, _library_id(service, config), OperationKind.SCAN)
    progress = status["progress"]

    if status["stage"] != "complete":
        typer.echo(f"✗ Scan {status['stage']}: {status['error'] or status['current_message']}")
        raise typer.Exit(code=1)
    typer.echo(
        "✓ Scan completed: "
        f"{progress['discovered_files']} discovered, "
        f"{progress['orphaned_files']} orphaned, "
        f"{progress['indexed_files']} indexed, "
        f"{progress['linked_files']} linked, "
        f"{progress['covers_extracted']} covers, "
        f"{progress['error_count']} errors."
    )


@app.command()
def check(
    apply: bool = typer.Option(False, "--apply", help="Apply the detected changes"),
) -> None:
    """Diff the library against the index without running the full pipeline."""
    setup_logging()

    config = _ensure_config()
    service = _build_service(config)
    library_id = _library_id(service, config)
    scan_id, result = service.start_interactive_scan(library_id)

    summary = result.summary()
    typer.echo("Library changes:")
    typer.echo(f"  New files:      {summary['new_files']}")
    typer.echo(f"  Moved files:    {summary['moved_files']}")
    typer.echo(f"  Orphaned files: {summary['orphaned_files']}")
    typer.echo(f"  Restored files: {summary['restored_files']}")
    typer.echo(f"  Unchanged:      {summary['unchanged_files']}")
    for moved in result.moved_files:
        typer.echo(f"  [→] {moved.old_path} -> {moved.new_path}")
    for orphan in result.orphaned_files:
        typer.echo(f"  [-] {orphan.path}")

    if not apply:
        service.discard_pending(scan_id, library_id)
        if result.has_changes:
            typer.echo("Run with --apply to write these changes.")
        return

    applied = service.apply_pending(scan_id, library_id)
    typer.echo(
        f"✓ Applied: {applied.added} added, {applied.moved} moved, "
        f"{applied.orphaned} orphaned, {applied.restored} restored"
    )


@app.command()
def covers(
    regenerate: bool = typer.Option(False, "--regenerate", help="Regenerate all covers"),
) -> None:
    """Generate missing (or all) cover thumbnails."""
    setup_logging()

    config = _ensure_config()
    service = _build_service(config, regenerate_covers=regenerate)
    status = _run_job(service, _library_id(service, config), OperationKind.COVERS)
    progress = status["progress"]
    typer.echo(
        f"[INFO] Covers: {progress['covers_extracted']} extracted, "
        f"{progress['covers_cached']} cached, {progress['error_count']} errors"
    )


@pages_app.command("list")
def pages_list(archive: Path = typer.Argument(..., help="Comic archive")) -> None:
    """List the page images of an archive in reading order."""
    try:
        listing = list_entries(archive, use_cache=False)
    except (ArchiveError, FileNotFoundError) as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)

    typer.echo(f"{archive.name} ({listing.format.value}, {listing.page_count} pages)")
    for index, name in enumerate(listing.images):
        marker = " (cover)" if name == listing.cover_path else ""
        typer.echo(f"  {index:4d}  {name}{marker}")


@pages_app.command("reorder")
def pages_reorder(
    archive: Path = typer.Argument(..., help="CBZ archive to rewrite"),
    pages: List[str] = typer.Argument(..., help="Page entries in their new order"),
) -> None:
    """Prefix the given pages with their position in the argument list."""
    setup_logging()
    orders = [PageOrder(original_path=name, new_index=i) for i, name in enumerate(pages)]
    try:
        result = reorder_pages_in_archive(archive, orders)
    except BackupRestoreError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=2)

    if not result.success:
        typer.echo(f"[ERROR] {result.error}")
        raise typer.Exit(code=1)
    typer.echo(f"✓ Reordered {result.reordered_count} pages ({result.new_total_pages} total)")


@pages_app.command("delete")
def pages_delete(
    archive: Path = typer.Argument(..., help="CBZ archive to rewrite"),
    pages: List[str] = typer.Argument(..., help="Page entries to delete"),
) -> None:
    """Delete page images from a CBZ."""
    setup_logging()
    try:
        result = delete_pages_from_archive(archive, pages)
    except BackupRestoreError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=2)

    if not result.success:
        typer.echo(f"[ERROR] {result.error}")
        raise typer.Exit(code=1)
    typer.echo(f"✓ Deleted {result.deleted_count} pages ({result.new_total_pages} left)")


@app.command()
def stats() -> None:
    """Show library statistics."""
    config = _ensure_config()
    init_db()

    with Session(get_engine()) as session:
        repo = Repository(session)
        library = repo.get_library_by_path(config.library_path)
        if library is None:
            typer.echo("[INFO] Library not scanned yet. Run: longbox scan")
            return
        library_stats = get_library_stats(repo, library.id)
        series_count = repo.count_series()

    size_gb = library_stats.total_size / (1024 ** 3)
    cache = listing_cache.stats()

    typer.echo(f"Library Statistics ({library.name}):")
    typer.echo(f"  Total files: {library_stats.total_files}")
    for status, count in sorted(library_stats.by_status.items()):
        typer.echo(f"    {status}: {count}")
    typer.echo(f"  Series: {series_count}")
    typer.echo(f"  Total size: {size_gb:.1f} GB")
    typer.echo(f"  Covers generated: {library_stats.covers_generated}")
    typer.echo(f"  Listing cache: {cache['size']} / {cache['max_entries']} entries")


@app.command()
def jobs(
    limit: int = typer.Option(10, "--limit", help="Number of jobs to show"),
) -> None:
    """Show recent scan jobs."""
    config = _ensure_config()
    service = _build_service(config)

    recent = service.jobs.list_jobs(limit=limit)
    if not recent:
        typer.echo("[INFO] No scan jobs yet.")
        return
    for job in recent:
        finished = job.completed_at.isoformat(timespec="seconds") if job.completed_at else "-"
        typer.echo(
            f"  {job.id[:8]}  {job.operation.value:<6}  {job.stage.value:<11}  "
            f"{finished}  {job.current_message or ''}"
        )


@app.command()
def migrate(
    check: bool = typer.Option(False, "--check", help="Print status and exit (1 if not at head)"),
) -> None:
    """Run pending database migrations (or check status with --check)."""
    setup_logging()
    _ensure_config()
    init_db()
    stamp_if_needed()

    current, head = get_status()

    if check:
        if current == head:
            typer.echo(f"[OK] Database at {head} (head).")
            raise typer.Exit(code=0)
        typer.echo(f"[WARN] Database behind: current {current}, head {head}")
        raise typer.Exit(code=1)

    if current == head:
        logger.info(f"Database already at {head} (head). Nothing to do.")
        raise typer.Exit(code=0)

    logger.info(f"Migrating database {current} -> {head} ...")
    run_migrations(backup=True)
    logger.info("Migration complete.")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Server host"),
    port: Optional[int] = typer.Option(None, "--port", help="Server port"),
) -> None:
    """Start the HTTP API and the scan queue worker."""
    setup_logging()

    typer.echo(typer.style(STARTUP_BANNER, fg=typer.colors.MAGENTA, bold=True))
    config = _ensure_config()
    service = _build_service(config)

    # Stamp databases created by create_all, then upgrade to head
    stamp_if_needed()
    current, head = get_status()
    if current != head:
        logger.info(f"Migrating database {current} -> {head} ...")
        run_migrations(backup=True)
        logger.info("Migration complete.")
    else:
        logger.info(f"Database at {head} (up to date).")

    _library_id(service, config)

    try:
        run_server(service, config, host=host, port=port)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()
