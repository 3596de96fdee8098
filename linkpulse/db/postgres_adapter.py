"""
PostgreSQL Database Adapter

Production backend. Uses a real connection pool and server-side timeouts:
- statement_timeout: a single slow statement is cancelled
- idle_in_transaction_session_timeout: an abandoned transaction is closed

Both bound the number of analytics transactions that can pile up behind a
slow write.
"""

from typing import Any, Optional

from sqlalchemy.pool import Pool

from linkpulse.db.interface import DatabaseAdapter


class PostgreSQLAdapter(DatabaseAdapter):
    """
    PostgreSQL (asyncpg) adapter implementation.
    """

    def __init__(self, statement_timeout_ms: int = 5000, pool_size: int = 10, max_overflow: int = 20):
        super().__init__(statement_timeout_ms)
        self.pool_size = pool_size
        self.max_overflow = max_overflow

    def get_pool_class(self) -> Optional[type[Pool]]:
        # Default AsyncAdaptedQueuePool
        return None

    def get_connect_args(self) -> dict[str, Any]:
        timeout = str(self.statement_timeout_ms)
        return {
            "server_settings": {
                "statement_timeout": timeout,
                "idle_in_transaction_session_timeout": timeout,
                "application_name": "linkpulse",
            }
        }

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {
            "echo": False,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_pre_ping": True,
        }

    def get_dialect_name(self) -> str:
        return "postgresql"
