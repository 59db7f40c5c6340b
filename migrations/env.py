import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from binapp import models  # noqa: F401
from binapp.extensions import db
from config import Config

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = db.Model.metadata


def _database_url() -> str:
    """Resolve ``env://NAME`` from alembic.ini, falling back to the app default."""

    configured = config.get_main_option("sqlalchemy.url") or ""
    if configured and not configured.startswith("env://"):
        return configured
    env_key = configured.split("env://", 1)[1] if configured else "DB_URL"
    return os.getenv(env_key or "DB_URL") or Config.SQLALCHEMY_DATABASE_URI


def _context_options(url: str) -> dict:
    # SQLite needs batch mode to alter constraints on existing tables.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _database_url()
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_context_options(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
