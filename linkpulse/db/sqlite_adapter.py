"""
SQLite Database Adapter

This module implements the DatabaseAdapter interface for SQLite.
All SQLite-specific configuration and behavior is encapsulated here.

Key characteristics:
- File-based (single .db file), no server required
- Single writer at a time (file locking); the busy timeout bounds how long
  a writer waits for the lock
- The pysqlite driver's own transaction handling breaks SAVEPOINT, so the
  adapter takes over BEGIN emission (needed by the device/session upserts)
  and uses BEGIN IMMEDIATE for read-then-write units of work
"""

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import NullPool

from linkpulse.db.interface import WRITE_INTENT_OPTION, DatabaseAdapter


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter implementation.
    """

    def get_pool_class(self) -> type[NullPool]:
        """
        SQLite uses NullPool: the file database gains nothing from pooling
        and a fresh connection per session keeps transactions isolated.
        """
        return NullPool

    def get_connect_args(self) -> dict[str, Any]:
        """
        Get SQLite-specific connection arguments.

        Returns:
            Dictionary with SQLite connection arguments
        """
        return {
            "check_same_thread": False,
            "timeout": self.statement_timeout_ms / 1000,
        }

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {
            "echo": False  # Set to True only for SQL debugging in development
        }

    def configure_engine(self, engine: AsyncEngine) -> None:
        """
        Let SQLAlchemy emit BEGIN itself so nested transactions (SAVEPOINT)
        behave.

        Connections opened with the write-intent option start with BEGIN
        IMMEDIATE: the RESERVED lock is taken up front, so a second writer
        waits out the busy timeout instead of failing to upgrade a read lock.
        """
        sync_engine = engine.sync_engine

        @event.listens_for(sync_engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sync_engine, "begin")
        def _emit_begin(connection):
            if connection.get_execution_options().get(WRITE_INTENT_OPTION):
                connection.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                connection.exec_driver_sql("BEGIN")

    def get_dialect_name(self) -> str:
        return "sqlite"
