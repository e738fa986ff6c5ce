# alembic/env.py
"""
Migraciones del schema icmstats (system_settings, icm_update_state, icm_snapshots).

URL de la DB, en orden:
  1) alembic -x db_url=...   (migrar otra base sin tocar el entorno)
  2) DATABASE_URL vía app.config.settings (env o .env)
  3) sqlalchemy.url de alembic.ini
"""
from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# target_metadata necesita todos los modelos registrados en Base
from app.config import settings  # noqa: E402
from app.db import Base  # noqa: E402
from app import models  # noqa: F401,E402

target_metadata = Base.metadata


def _get_db_url() -> str:
    x_url = context.get_x_argument(as_dictionary=True).get("db_url")
    if x_url:
        return x_url

    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    ini_url = config.get_main_option("sqlalchemy.url")
    if ini_url:
        return ini_url

    raise RuntimeError("DATABASE_URL no está configurada y alembic.ini no trae sqlalchemy.url")


def _configure_kwargs(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        # sqlite no soporta ALTER completo (add_column de system_settings.updated_by)
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = _get_db_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _get_db_url()
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = url

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
