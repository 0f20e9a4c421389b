"""Alembic environment for the escrow tables.

The `users` table belongs to the identity service: the ORM maps it so the
core can read parties and bump their statistics, but migrations here never
create, alter or drop it.

Online migrations run through the async engine; the URL always comes from
Settings so alembic and the application agree on the database.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from milestone_escrow.config import get_settings
from milestone_escrow.infrastructure.database.orm_models import Base

EXTERNALLY_OWNED_TABLES = frozenset({"users"})

config = context.config
config.set_main_option("sqlalchemy.url", get_settings().database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def include_object(object_, name, type_, reflected, compare_to) -> bool:  # noqa: ANN001
    """Skip tables owned by other services, and their indexes."""
    if type_ == "table":
        return name not in EXTERNALLY_OWNED_TABLES
    table = getattr(object_, "table", None)
    if table is not None:
        return table.name not in EXTERNALLY_OWNED_TABLES
    return True


def _configure(**kwargs) -> None:  # noqa: ANN003
    url = config.get_main_option("sqlalchemy.url") or ""
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the escrow tables without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
