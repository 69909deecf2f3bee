"""Initial schema: libraries, series, comic_files, file_metadata, scan_jobs, scan_job_logs

Revision ID: 0001
Revises: None
Create Date: 2026-10-01 00:00:00
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def _table_exists(name: str) -> bool:
    """Check whether a table already exists in the database."""
    conn = op.get_bind()
    result = conn.execute(
        sa.text("SELECT 1 FROM sqlite_master WHERE type='table' AND name=:n"),
        {"n": name},
    )
    return result.fetchone() is not None


def upgrade() -> None:
    # Guarded so a database created by init_db() (create_all) can be upgraded
    # after being stamped.

    if not _table_exists("libraries"):
        op.create_table(
            "libraries",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("root_path", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_libraries_root_path", "libraries", ["root_path"], unique=True)

    if not _table_exists("series"):
        op.create_table(
            "series",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("normalized_name", sa.String(), nullable=False),
            sa.Column("publisher", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_series_normalized_name", "series", ["normalized_name"], unique=True)

    if not _table_exists("comic_files"):
        op.create_table(
            "comic_files",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("library_id", sa.String(), sa.ForeignKey("libraries.id"), nullable=False),
            sa.Column("path", sa.String(), nullable=False),
            sa.Column("relative_path", sa.String(), nullable=False),
            sa.Column("filename", sa.String(), nullable=False),
            sa.Column("extension", sa.String(), nullable=False),
            sa.Column("size", sa.Integer(), nullable=False),
            sa.Column("modified_at", sa.DateTime(), nullable=False),
            sa.Column("hash", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("series_id", sa.String(), sa.ForeignKey("series.id"), nullable=True),
            sa.Column("cover_generated", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_comic_files_library_id", "comic_files", ["library_id"])
        op.create_index("ix_comic_files_path", "comic_files", ["path"])
        op.create_index("ix_comic_files_relative_path", "comic_files", ["relative_path"])
        op.create_index("ix_comic_files_hash", "comic_files", ["hash"])
        op.create_index("ix_comic_files_status", "comic_files", ["status"])
        op.create_index("ix_comic_files_series_id", "comic_files", ["series_id"])

    if not _table_exists("file_metadata"):
        op.create_table(
            "file_metadata",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("file_id", sa.String(), sa.ForeignKey("comic_files.id"), unique=True, nullable=False),
            sa.Column("series", sa.String(), nullable=True),
            sa.Column("number", sa.String(), nullable=True),
            sa.Column("title", sa.String(), nullable=True),
            sa.Column("volume", sa.Integer(), nullable=True),
            sa.Column("year", sa.Integer(), nullable=True),
            sa.Column("publisher", sa.String(), nullable=True),
            sa.Column("writer", sa.String(), nullable=True),
            sa.Column("page_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("has_comic_info", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("extracted_at", sa.DateTime(), nullable=False),
        )

    if not _table_exists("scan_jobs"):
        op.create_table(
            "scan_jobs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("library_id", sa.String(), sa.ForeignKey("libraries.id"), nullable=False),
            sa.Column("operation", sa.String(), nullable=False),
            sa.Column("stage", sa.String(), nullable=False),
            sa.Column("current_message", sa.String(), nullable=True),
            sa.Column("discovered_files", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("orphaned_files", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("indexed_files", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("linked_files", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("series_created", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("covers_extracted", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("covers_cached", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_files", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error", sa.String(), nullable=True),
            sa.Column("queued_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_scan_jobs_library_id", "scan_jobs", ["library_id"])
        op.create_index("ix_scan_jobs_stage", "scan_jobs", ["stage"])

    if not _table_exists("scan_job_logs"):
        op.create_table(
            "scan_job_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_id", sa.String(), sa.ForeignKey("scan_jobs.id"), nullable=False),
            sa.Column("stage", sa.String(), nullable=False),
            sa.Column("message", sa.String(), nullable=False),
            sa.Column("detail", sa.String(), nullable=True),
            sa.Column("level", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_scan_job_logs_job_id", "scan_job_logs", ["job_id"])


def downgrade() -> None:
    # Reverse FK order
    op.drop_table("scan_job_logs")
    op.drop_table("scan_jobs")
    op.drop_table("file_metadata")
    op.drop_table("comic_files")
    op.drop_table("series")
    op.drop_table("libraries")
