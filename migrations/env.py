"""Alembic env for visionhub tables. URL from ``-x url=...`` or the app config (DATABASE_URL)."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

# Import SQLModel metadata and all models so Alembic can autogenerate
from sqlmodel import SQLModel

from visionhub.models.entities import (  # noqa: F401 - register tables with metadata
    FaceIdentity,
    VisionAnalysis,
)

target_metadata = SQLModel.metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def get_url() -> str:
    """Explicit ``-x url=`` wins; otherwise the database_url from visionhub config."""
    url = context.get_x_argument(as_dictionary=True).get("url")
    if url:
        return url
    from visionhub.core.config import get_config
    return get_config().database_url


def _uses_batch(url: str) -> bool:
    # SQLite cannot ALTER/DROP columns in place; Alembic rebuilds the table instead.
    return make_url(url).get_backend_name() == "sqlite"


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL only)."""
    url = get_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=_uses_batch(url),
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    url = get_url()
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=_uses_batch(url),
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
