"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from datetime import datetime
from pathlib import Path

from usage_monitor.core.cycles import as_utc

DEFAULT_DB_PATH = "~/.usage_monitor/metrics.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.
    
    The parent directory is created if needed and ``~`` is expanded.
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_time(moment: datetime) -> str:
    """Fixed-width UTC ISO-8601 text, so string order matches time order."""
    return as_utc(moment).isoformat(timespec="microseconds")


def from_db_time(text: str) -> datetime:
    """Inverse of ``to_db_time``; tolerates legacy values without offsets."""
    return as_utc(datetime.fromisoformat(text))
