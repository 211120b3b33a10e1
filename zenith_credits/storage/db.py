"""
Database connection management.

Provides SQLite connection for the transaction journal.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "zenith_credits.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the journal.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection in WAL mode so readers never block the appender
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
