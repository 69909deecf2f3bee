"""Alembic migration environment.

Uses the database URL set by longbox.migrations (falling back to the default
engine) and the Longbox SQLModel metadata.
"""

from __future__ import annotations

from alembic import context
from sqlmodel import SQLModel, create_engine

from longbox.database import engine as default_engine

# Register every table on SQLModel.metadata before Alembic inspects it
from longbox import models as _models  # noqa: F401

target_metadata = SQLModel.metadata


def run_migrations_online() -> None:
    """Run migrations with a real database connection."""
    url = context.config.get_main_option("sqlalchemy.url")
    engine = create_engine(url) if url else default_engine

    with engine.connect() as conn:
        context.configure(
            connection=conn,
            target_metadata=target_metadata,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    raise RuntimeError(
        "Offline migration mode is not supported. "
        "Run without --sql."
    )
else:
    run_migrations_online()
