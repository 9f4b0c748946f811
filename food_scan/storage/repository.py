"""
Repository functions for local persistence.

Two tables:
- ``usage_record``: append-only ledger of user actions
- ``kv_store``: JSON blobs by key (subscription state, preferences, recipe book)
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ActionKind, UsageChannel, UsageRecord
from food_scan.core.errors import StorageError

logger = logging.getLogger(__name__)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage ledger and key-value tables if they don't exist.

    No UPDATE should ever be performed on ``usage_record``; rows only
    leave it through retention pruning.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                occurred_at TEXT NOT NULL,
                action_kind TEXT NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 1,
                channel TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _insert_record(conn: sqlite3.Connection, record: UsageRecord) -> None:
    conn.execute("""
        INSERT INTO usage_record (occurred_at, action_kind, quantity, channel)
        VALUES (?, ?, ?, ?)
    """, (
        record.occurred_at.isoformat(),
        record.action_kind.value,
        record.quantity,
        record.channel.value,
    ))


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage record to the ledger.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file

    Raises:
        StorageError: If the row cannot be written
    """
    conn = get_connection(db_path)
    try:
        _insert_record(conn, record)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError.write_failure(f"Failed to record usage: {e}")
    finally:
        conn.close()


def fetch_usage_records(
    action_kind: Optional[ActionKind] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageRecord]:
    """Fetch usage records, newest first.

    Args:
        action_kind: Optional filter for one action kind
        since: Optional lower bound on ``occurred_at``
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT occurred_at, action_kind, quantity, channel FROM usage_record"
        params: List[Any] = []
        conditions = []

        if action_kind is not None:
            conditions.append("action_kind = ?")
            params.append(action_kind.value)
        if since is not None:
            conditions.append("occurred_at >= ?")
            params.append(since.isoformat())

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY occurred_at DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageRecord(
                occurred_at=datetime.fromisoformat(row[0]),
                action_kind=ActionKind(row[1]),
                quantity=row[2],
                channel=UsageChannel(row[3]),
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def prune_usage_records(before: datetime, db_path: str = DEFAULT_DB_PATH) -> int:
    """Delete ledger rows older than ``before``.

    Returns:
        Number of rows removed

    Raises:
        StorageError: If the rows cannot be deleted
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "DELETE FROM usage_record WHERE occurred_at < ?", (before.isoformat(),)
        )
        conn.commit()
        return cursor.rowcount
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError.write_failure(f"Failed to prune usage records: {e}")
    finally:
        conn.close()


class KeyValueStore:
    """JSON blob storage keyed by name.

    Each model type owns its own shape through ``to_dict``/``from_dict``;
    the store only guarantees the value round-trips as JSON.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and make sure the schema exists.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def put_json(self, key: str, value: Any, record: Optional[UsageRecord] = None) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        With ``record``, the ledger row is appended in the same transaction,
        so either both writes land or neither does.

        Raises:
            StorageError: If the value cannot be serialized or written
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError.write_failure(f"Value for '{key}' is not JSON-serializable: {e}")

        conn = get_connection(self.db_path)
        try:
            if record is not None:
                _insert_record(conn, record)
            conn.execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
            """, (key, payload, datetime.now().isoformat()))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError.write_failure(f"Failed to write '{key}': {e}")
        finally:
            conn.close()

    def get_json(self, key: str, default: Any = None) -> Any:
        """Return the value stored under ``key`` or ``default``.

        Raises:
            StorageError: ``read_failure`` on database errors,
                ``corrupted_data`` if the stored text is not valid JSON
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError.read_failure(f"Failed to read '{key}': {e}")
        finally:
            conn.close()

        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError.corrupted_data(f"Stored value for '{key}' is not valid JSON: {e}")

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns whether anything was deleted."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def keys(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            return [row[0] for row in conn.execute("SELECT key FROM kv_store ORDER BY key")]
        finally:
            conn.close()
