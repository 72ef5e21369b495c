"""Alembic environment for VibeRide — targets models.db.metadata."""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# Alembic Config object (alembic.ini values).
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ── Point Alembic at our models ───────────────────────────────────────────────
from models import db                # noqa: E402
from database import _db_url         # noqa: E402  (DATABASE_URL, postgres:// normalised)

target_metadata = db.metadata

# Override whatever is in alembic.ini; credentials never live there.
config.set_main_option('sqlalchemy.url', _db_url)

# SQLite cannot ALTER most constraints in place; batch mode rebuilds the table.
_render_as_batch = _db_url.startswith('sqlite')


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a live DB (`alembic upgrade head --sql`)."""
    context.configure(
        url=config.get_main_option('sqlalchemy.url'),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={'paramstyle': 'named'},
        render_as_batch=_render_as_batch,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix='sqlalchemy.',
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=_render_as_batch,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
