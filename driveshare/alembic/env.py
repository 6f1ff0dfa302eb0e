# Alembic environment for the booking engine schema.
# The target URL comes from sqlalchemy.url when a caller sets it (tests, one-off upgrades),
# otherwise from DATABASE_URL, the same variable driveshare.db reads.
import os
from logging.config import fileConfig
from typing import Any, Dict

from alembic import context
from sqlalchemy import engine_from_config, pool

from driveshare import models  # noqa: F401  registers every table on Base.metadata
from driveshare.db import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or os.getenv("DATABASE_URL", "sqlite:///./data.db")


def _context_options(url: str) -> Dict[str, Any]:
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "compare_server_default": True,
        # SQLite cannot ALTER most constraints in place
        "render_as_batch": url.startswith("sqlite"),
    }


def migrate_offline(url: str) -> None:
    context.configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_context_options(url))
    with context.begin_transaction():
        context.run_migrations()


def migrate_online(url: str) -> None:
    section = dict(config.get_section(config.config_ini_section) or {}, **{"sqlalchemy.url": url})
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool, future=True)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **_context_options(url))
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


(migrate_offline if context.is_offline_mode() else migrate_online)(database_url())
