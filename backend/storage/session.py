"""Transactional session scope shared by both backends."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConflictError, ContextableError, StorageError

logger = logging.getLogger(__name__)

_UNIQUE_MARKERS = ("unique constraint", "duplicate key", "unique violation")


def is_memory_url(database_url: str) -> bool:
    return ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:")


def engine_options(database_url: str) -> dict:
    """Extra `create_async_engine` options for the given URL."""
    if database_url.startswith("sqlite") and is_memory_url(database_url):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {}


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Install `PRAGMA foreign_keys=ON` on every new SQLite connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _is_unique_violation(exc: SQLAlchemyIntegrityError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in _UNIQUE_MARKERS)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, roll back on any failure.

    Domain errors pass through untouched; SQLAlchemy errors are translated
    into ConflictError (unique violations) or StorageError.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except ContextableError:
            await session.rollback()
            raise
        except SQLAlchemyIntegrityError as exc:
            await session.rollback()
            if _is_unique_violation(exc):
                raise ConflictError("A record with this name already exists") from exc
            raise StorageError(f"Constraint violation: {exc.orig}", cause=exc) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("Storage operation failed: %s", exc.__class__.__name__)
            raise StorageError(f"Database operation failed: {exc}", cause=exc) from exc
