import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from fulfillment.config import Settings, get_settings
from fulfillment.core.exceptions import LockTimeoutError


logger = logging.getLogger(__name__)

# lock_not_available, deadlock_detected
LOCK_ERROR_SQLSTATES = {"55P03", "40P01"}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def normalize_database_url(url: str) -> str:
    """Route PostgreSQL URLs to the async psycopg driver."""
    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def is_lock_error(exc: DBAPIError) -> bool:
    """True when the driver gave up waiting on a lock or broke a deadlock."""
    orig = exc.orig
    if getattr(orig, "sqlstate", None) in LOCK_ERROR_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    # BEGIN IMMEDIATE takes the write lock up front so concurrent writers
    # serialize the way SELECT ... FOR UPDATE does on PostgreSQL.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Explicit handle on the transactional store.

    Construct one at startup, use ``transaction()`` for every unit of work,
    and call ``dispose()`` on shutdown. Nothing here is module-global.
    """

    def __init__(self, settings: Optional[Settings] = None, url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.url = normalize_database_url(url or self.settings.DATABASE_URL)
        self.is_sqlite = self.url.startswith("sqlite")
        self.engine = self._create_engine()
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _create_engine(self) -> AsyncEngine:
        s = self.settings
        if self.is_sqlite:
            engine = create_async_engine(
                self.url,
                echo=s.DEBUG,
                connect_args={
                    "check_same_thread": False,
                    "timeout": s.DB_LOCK_TIMEOUT_MS / 1000,  # busy timeout in seconds
                },
            )
            _install_sqlite_locking(engine)
            return engine

        return create_async_engine(
            self.url,
            echo=s.DEBUG,
            pool_pre_ping=True,  # Check connection health before use
            pool_size=s.DB_POOL_SIZE,
            max_overflow=s.DB_MAX_OVERFLOW,
            pool_timeout=s.DB_POOL_TIMEOUT,
            pool_recycle=s.DB_POOL_RECYCLE,
            connect_args={
                "prepare_threshold": None,
                "connect_timeout": 30,
                "options": f"-c lock_timeout={s.DB_LOCK_TIMEOUT_MS}",
            },
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        One database transaction. Commits on success, rolls back on any error.

        Lock waits that exceed DB_LOCK_TIMEOUT_MS surface as LockTimeoutError.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except DBAPIError as exc:
                await session.rollback()
                if is_lock_error(exc):
                    logger.warning("Lock wait exceeded, transaction rolled back: %s", exc.orig)
                    raise LockTimeoutError(
                        "Timed out waiting for a locked record; retry the operation",
                        {"error": str(exc.orig)},
                    ) from exc
                raise
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables."""
        # Import all models to register them with Base.metadata
        from fulfillment import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready (%d tables)", len(Base.metadata.tables))

    async def drop_all(self) -> None:
        from fulfillment import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
