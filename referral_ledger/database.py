"""
Async SQLAlchemy store handle for the referral ledger.

The store is created once at startup and injected into the ledger; nothing
in the package reaches for a module-level engine.
CRITICAL: expire_on_commit=False prevents lazy-loading issues in async contexts.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

# Execution option marking connections used by read-only scopes
READ_ONLY_OPTION = "ledger_read_only"


class Base(DeclarativeBase):
    pass


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN until the first write, so two debits can both
    # read a balance and then deadlock upgrading their locks. Write scopes
    # take the write lock up front; read scopes keep a deferred BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


class LedgerStore:
    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["timeout"] = 30
        self.engine = create_async_engine(database_url, echo=echo, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            _use_immediate_transactions(self.engine)
        self._session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        # Shares the pool and event listeners of self.engine
        self._read_session_factory = async_sessionmaker(
            self.engine.execution_options(**{READ_ONLY_OPTION: True}),
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read scope. Never hold one open while entering ``transaction()``."""
        async with self._read_session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Atomic write scope: commits on success, rolls back on any exception."""
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except Exception as e:
                logger.debug("Ledger transaction rolled back: %s", str(e))
                raise

    async def create_all(self) -> None:
        # Import for side effect: registers the tables on Base.metadata
        from referral_ledger import tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Ledger schema ready (%s)", self.engine.dialect.name)

    async def dispose(self) -> None:
        await self.engine.dispose()
