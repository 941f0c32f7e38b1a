# migrations/env.py
"""
Alembic environment for the entitlement store.

Tables come from ``models`` (SQLModel.metadata). The connection is built by
``db.make_engine`` so migrations get the same SQLite busy timeout and MySQL
TLS settings as the service; the SQLite foreign-key pragma is switched off
while migrating. ``DATABASE_URL`` wins over alembic.ini.
"""

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlmodel import SQLModel

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ---- project imports ----
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import models  # noqa: E402,F401  registers the five tables
from config import normalize_database_url  # noqa: E402
from db import make_engine  # noqa: E402

target_metadata = SQLModel.metadata


def get_url() -> str:
    return normalize_database_url(os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url"))


def include_object(obj, name, type_, reflected, compare_to):
    return not (type_ == "table" and name == "alembic_version")


def _configure(url: str, **kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        include_object=include_object,
        # SQLite cannot ALTER constraints in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline():
    url = get_url()
    _configure(url, url=url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = get_url()
    engine = make_engine(url)
    try:
        with engine.connect() as connection:
            if connection.dialect.name == "sqlite":
                # batch table rebuilds must not fire ON DELETE CASCADE
                connection.exec_driver_sql("PRAGMA foreign_keys=OFF")
                connection.commit()
            _configure(url, connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
