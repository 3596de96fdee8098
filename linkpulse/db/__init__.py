"""
Database module with abstraction layer.

This module provides:
- DatabaseAdapter interface: Abstract base class for database implementations
- SQLiteAdapter / PostgreSQLAdapter: backend-specific configuration
- Session management and the per-request tracking unit of work
"""

from linkpulse.db.interface import DatabaseAdapter
from linkpulse.db.session import (
    TrackingUnitOfWork,
    async_session_maker,
    engine,
    get_session,
)

__all__ = [
    "DatabaseAdapter",
    "TrackingUnitOfWork",
    "get_session",
    "async_session_maker",
    "engine",
]
