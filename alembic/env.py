"""
Alembic environment for CoverCart.

The URL comes from ALEMBIC_DATABASE_URL, else from covercart settings
(DATABASE_URL normalized to an async driver). Online migrations run through
the same async engine builder the application uses.
"""

from __future__ import annotations

import asyncio
import logging
import os
from logging.config import fileConfig

from sqlalchemy.engine import Connection

from alembic import context
from covercart.core.db import create_engine_for_url, get_alembic_engine_url
from covercart.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

config.set_main_option("sqlalchemy.url", (os.getenv("ALEMBIC_DATABASE_URL") or "").strip() or get_alembic_engine_url())
target_metadata = Base.metadata


def _skip_empty_autogenerate(context_, revision, directives) -> None:
    if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []
        logger.info("no schema changes, revision skipped")


def _configure(**kwargs) -> None:
    url = config.get_main_option("sqlalchemy.url") or ""
    context.configure(
        target_metadata=target_metadata,
        process_revision_directives=_skip_empty_autogenerate,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    logger.info("migrating %s", connection.engine.url.render_as_string(hide_password=True))
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_engine_for_url(config.get_main_option("sqlalchemy.url"))
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
