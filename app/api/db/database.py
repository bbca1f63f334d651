"""
Connection pool setup and ephemeral database provisioning.

Production opens a pool against the configured database with
``connect_pool``. Tests call ``provision_ephemeral`` with settings whose
database name is a fresh UUID: it creates that database, opens a pool on it
and applies every Alembic revision, so concurrent test runs never share state.
"""

import asyncio
import logging
import weakref
from typing import AsyncIterator

from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.util import CommandError
from fastapi import Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from app.api.core.config import PROJECT_ROOT, DatabaseSettings
from app.api.core.exceptions import DatabaseConnectionError

MIGRATIONS_DIR = PROJECT_ROOT / "alembic"

CONNECTION_FAILURES = (SQLAlchemyError, OSError, asyncio.TimeoutError)

Base = SQLModel

logger = logging.getLogger("app")

# Alembic's migration context is process-global; one upgrade at a time per loop.
_migration_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def _describe(exc: BaseException) -> str:
    original = getattr(exc, "orig", None) or exc
    return f"{type(original).__name__}: {original}"


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def connect_pool(db_settings: DatabaseSettings) -> AsyncEngine:
    """
    Open a connection pool to the configured database and check it works.

    Args:
        db_settings (DatabaseSettings): Connection parameters.

    Returns:
        AsyncEngine: Engine owning the shared connection pool.

    Raises:
        DatabaseConnectionError: If the server is unreachable or rejects the credentials.
    """
    engine = create_async_engine(db_settings.connection_url(), pool_pre_ping=True)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except CONNECTION_FAILURES as exc:
        await engine.dispose()
        raise DatabaseConnectionError(
            f"Failed to connect to database {db_settings.database_name!r} at "
            f"{db_settings.host}:{db_settings.port}: {_describe(exc)}"
        ) from exc

    logger.info(
        f"Connected to database {db_settings.database_name!r} at "
        f"{db_settings.host}:{db_settings.port}"
    )
    return engine


async def close_pool(engine: AsyncEngine) -> None:
    await engine.dispose()


async def create_database(db_settings: DatabaseSettings) -> None:
    """Issue ``CREATE DATABASE`` for ``db_settings.database_name`` over a maintenance connection."""
    maintenance = create_async_engine(
        db_settings.connection_url_without_db(),
        isolation_level="AUTOCOMMIT",
    )
    try:
        async with maintenance.connect() as conn:
            name = conn.dialect.identifier_preparer.quote_identifier(db_settings.database_name)
            await conn.execute(text(f"CREATE DATABASE {name}"))
    except CONNECTION_FAILURES as exc:
        raise DatabaseConnectionError(
            f"Failed to create database {db_settings.database_name!r} on "
            f"{db_settings.host}:{db_settings.port}: {_describe(exc)}"
        ) from exc
    finally:
        await maintenance.dispose()

    logger.info(f"Created database {db_settings.database_name!r}")


def alembic_config() -> AlembicConfig:
    config = AlembicConfig()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    return config


def _upgrade(connection, config: AlembicConfig) -> None:
    config.attributes["connection"] = connection
    command.upgrade(config, "head")


async def run_migrations(engine: AsyncEngine) -> None:
    """
    Apply every pending Alembic revision, oldest first, in one transaction.

    Revisions already recorded in ``alembic_version`` are skipped, so calling
    this again on a migrated database changes nothing.

    Raises:
        DatabaseConnectionError: If any revision fails; the transaction is rolled back.
    """
    lock = _migration_locks.setdefault(asyncio.get_running_loop(), asyncio.Lock())
    async with lock:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(_upgrade, alembic_config())
        except (CommandError, *CONNECTION_FAILURES) as exc:
            raise DatabaseConnectionError(
                f"Failed to migrate database {engine.url.database!r}: {_describe(exc)}"
            ) from exc

    logger.info(f"Database {engine.url.database!r} migrated to head")


async def provision_ephemeral(db_settings: DatabaseSettings) -> AsyncEngine:
    """
    Create a fresh database, connect to it and apply all migrations.

    Meant for tests: pass settings whose ``database_name`` is a freshly
    generated unique token (e.g. a UUID).

    Args:
        db_settings (DatabaseSettings): Settings naming the database to create.

    Returns:
        AsyncEngine: Pool on the new, fully migrated database.

    Raises:
        DatabaseConnectionError: If the server is unreachable, the database
            cannot be created, or migration fails.
    """
    await create_database(db_settings)
    engine = await connect_pool(db_settings)
    try:
        await run_migrations(engine)
    except DatabaseConnectionError:
        await engine.dispose()
        raise
    return engine


async def check_server(db_settings: DatabaseSettings) -> bool:
    """Return True if the server accepts a maintenance connection."""
    maintenance = create_async_engine(db_settings.connection_url_without_db())
    try:
        async with maintenance.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except CONNECTION_FAILURES:
        return False
    finally:
        await maintenance.dispose()


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """
    Yield a request-scoped session from the shared pool on the application state.

    The session is closed when the request finishes; its connection goes back
    to the pool.
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

