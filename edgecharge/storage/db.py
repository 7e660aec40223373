"""
Database connection management.

Provides SQLite connections for ledger and audit persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "edgecharge.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection in autocommit mode.

    Callers manage transactions explicitly with BEGIN / COMMIT / ROLLBACK.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    return sqlite3.connect(str(path), isolation_level=None)
