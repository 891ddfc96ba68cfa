"""Alembic migration environment for the esg_sync tables.

The database URL always comes from ``ESG_SYNC_DATABASE_URL`` (via
``GlobalSettings``), never from ``alembic.ini``.
"""

from __future__ import annotations

import logging
from importlib import import_module
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context  # type: ignore[import-untyped]
from esg_sync.models.base import MODEL_MODULES, Base
from esg_sync.utils.config import ensure_runtime_configuration, get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

for _module in MODEL_MODULES:
    import_module(_module)
target_metadata = Base.metadata

COMPARE_OPTIONS = {
    "compare_type": True,
    "compare_server_default": True,
    "transaction_per_migration": True,
}


def get_database_url() -> str:
    settings = ensure_runtime_configuration(get_settings())
    if not settings.database_url:
        raise RuntimeError("ESG_SYNC_DATABASE_URL must be set to run migrations")
    return settings.database_url


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""

    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        **COMPARE_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = get_database_url()
    logger.info("Running migrations against %s", url.split("@")[-1])
    engine = create_engine(url, poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, **COMPARE_OPTIONS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
