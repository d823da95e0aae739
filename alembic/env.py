"""Alembic entry point for the Preik schema.

DATABASE_URL (from the environment or .env) wins over alembic.ini so the same
URL serves the API, the worker and migrations.
"""
import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
load_dotenv()

from preik.db.base import _normalize_url  # noqa: E402
from preik.db.models import Base  # noqa: E402

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name)

_env_url = _normalize_url(os.getenv("DATABASE_URL", "").strip())
if _env_url:
    config.set_main_option("sqlalchemy.url", _env_url)

COMPARE = {"target_metadata": Base.metadata, "compare_type": True, "compare_server_default": True}


def _offline() -> None:
    context.configure(url=config.get_main_option("sqlalchemy.url"), literal_binds=True, **COMPARE)
    with context.begin_transaction():
        context.run_migrations()


def _online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **COMPARE)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    _offline()
else:
    _online()
