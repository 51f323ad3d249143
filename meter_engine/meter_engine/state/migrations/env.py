"""Alembic environment for the metering state store.

Supports both **online** (connected) and **offline** (SQL-generation) modes.
The database URL is resolved from ``ALEMBIC_DATABASE_URL``, then
``sqlalchemy.url`` in ``alembic.ini``, then ``METER_DATABASE_URL``.

``target_metadata`` is bound to ``meter_engine.state.tables.Base.metadata``
so that ``--autogenerate`` detects drift against the ORM definitions.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from meter_engine.state.tables import Base
from sqlalchemy import engine_from_config, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# ---------------------------------------------------------------------------
# Database URL resolution
# ---------------------------------------------------------------------------

_DEFAULT_DATABASE_URL = "sqlite:///.meter/state.db"


def _get_database_url() -> str:
    """Resolve a *synchronous* database URL for Alembic.

    Async driver prefixes are swapped for their synchronous counterparts
    (psycopg for PostgreSQL, pysqlite for SQLite) because Alembic's
    ``MigrationContext`` runs on a synchronous engine.
    """
    url = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or os.environ.get("METER_DATABASE_URL")
    )
    if not url:
        url = _DEFAULT_DATABASE_URL
        logger.info("Using default database URL: %s", url)

    if url.startswith("postgresql+asyncpg://"):
        url = "postgresql+psycopg://" + url[len("postgresql+asyncpg://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    elif url.startswith("sqlite+aiosqlite://"):
        url = "sqlite://" + url[len("sqlite+aiosqlite://") :]
    return url


# ---------------------------------------------------------------------------
# Offline / online runners
# ---------------------------------------------------------------------------


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without a live database."""
    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run each revision in a transaction against a live database."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
