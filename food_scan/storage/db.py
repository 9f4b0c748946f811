"""
SQLite connection helper for the local store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".food-scan.db"

# Seconds a writer waits for another connection's lock before failing.
BUSY_TIMEOUT = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to ``db_path``, creating its directory if needed.

    Callers own the connection and must close it.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
