"""
Alembic environment configuration for async database migrations.

Runs migrations against the application's configured database URL with the
asyncpg driver, in offline or online mode.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger
from orderflow.database.connection import _convert_database_url_to_async
from orderflow.database.models import Base

# Alembic Config object provides access to values within the .ini file
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
logger = get_logger(__name__)

target_metadata = Base.metadata

config.set_main_option(
    "sqlalchemy.url", _convert_database_url_to_async(settings.database_url)
)


def run_migrations_offline() -> None:
    """
    Run migrations in 'offline' mode.

    Emits SQL to the script output using only the URL, without a DBAPI.
    """
    url = config.get_main_option("sqlalchemy.url")
    if not url:
        raise ValueError("Database URL is required for migrations")

    logger.info("Running migrations in offline mode", url_prefix=url.split("://")[0])

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    """
    Execute migrations with the given connection.

    Args:
        connection: SQLAlchemy connection to use for migrations
    """
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        transaction_per_migration=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Create an async engine and run migrations on one of its connections."""
    configuration = config.get_section(config.config_ini_section, {})

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    except Exception as e:
        logger.error(
            "Async migration failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    logger.info("Running migrations in online mode")
    asyncio.run(run_async_migrations())
    logger.info("Online migrations completed successfully")


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
