"""
Sync State Database Layer
Supports both SQLite (local development) and PostgreSQL (Vercel/production).
Holds the resumable sync cursor, the run lease and the run history.
"""

import os
import sqlite3
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple
from abc import ABC, abstractmethod

from dateutil import parser as dtparser

logger = logging.getLogger(__name__)

# Check if we're on Vercel (PostgreSQL) or local (SQLite)
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None
DATABASE_URL = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        k TEXT PRIMARY KEY,
        v TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_leases (
        name TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_logs (
        id {pk},
        operation TEXT NOT NULL,
        entity_id TEXT,
        status TEXT NOT NULL,
        message TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_activities (
        id {pk},
        activity_type TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT DEFAULT 'running',
        start_cursor TEXT,
        next_cursor TEXT,
        processed INTEGER DEFAULT 0,
        created INTEGER DEFAULT 0,
        updated INTEGER DEFAULT 0,
        skipped INTEGER DEFAULT 0,
        failed INTEGER DEFAULT 0,
        deleted INTEGER DEFAULT 0,
        summary TEXT
    )
    """,
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: datetime) -> str:
    # Fixed width so timestamps compare correctly as text
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class DatabaseInterface(ABC):
    """Abstract base class for database operations"""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        pass

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        pass

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass


class SQLiteDatabase(DatabaseInterface):
    """SQLite implementation for local development"""

    def __init__(self, path: str = "sync.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.conn.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def get_last_insert_id(self, cursor) -> int:
        return cursor.lastrowid

    def _init_schema(self) -> None:
        for statement in SCHEMA:
            self.conn.execute(statement.format(pk="INTEGER PRIMARY KEY AUTOINCREMENT"))
        self.conn.commit()


class PostgreSQLDatabase(DatabaseInterface):
    """PostgreSQL implementation for Vercel/production"""

    def __init__(self, database_url: str = None):
        import psycopg2

        self.database_url = database_url or DATABASE_URL
        if not self.database_url:
            raise ValueError("No PostgreSQL database URL provided. Set POSTGRES_URL environment variable.")

        self.conn = psycopg2.connect(self.database_url)
        self.conn.autocommit = False
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        # Convert SQLite-style ? placeholders to PostgreSQL-style %s
        query = self._convert_placeholders(query)
        cur = self.conn.cursor()
        cur.execute(query, params)
        return cur

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def get_last_insert_id(self, cursor) -> int:
        # PostgreSQL returns the ID via RETURNING clause
        result = cursor.fetchone()
        return result[0] if result else None

    def _convert_placeholders(self, query: str) -> str:
        """Convert SQLite ? placeholders to PostgreSQL %s"""
        return query.replace('?', '%s')

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement.format(pk="SERIAL PRIMARY KEY"))
        self.conn.commit()


class SyncDB:
    """
    Sync state database that works with both SQLite and PostgreSQL.
    Automatically selects the appropriate backend based on environment.
    """

    def __init__(self, path: str = "sync.db"):
        self.is_postgres = bool(IS_VERCEL and DATABASE_URL)

        if self.is_postgres:
            logger.info("Using PostgreSQL database (Vercel mode)")
            self._db = PostgreSQLDatabase(DATABASE_URL)
        else:
            logger.info(f"Using SQLite database: {path}")
            self._db = SQLiteDatabase(path)
            self.path = path

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self._db.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self._db.fetchone(query, params)

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self._db.fetchall(query, params)

    def commit(self) -> None:
        self._db.commit()

    # ============================================
    # STATE MANAGEMENT
    # ============================================

    def get_state(self, k: str) -> Optional[str]:
        row = self.fetchone("SELECT v FROM sync_state WHERE k = ?", (k,))
        return row[0] if row else None

    def set_state(self, k: str, v: str) -> None:
        self.execute("""
            INSERT INTO sync_state(k, v) VALUES(?, ?)
            ON CONFLICT(k) DO UPDATE SET v = excluded.v
        """, (k, v))
        self.commit()

    # ============================================
    # RUN LEASE
    # ============================================

    def acquire_lease(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """
        Take the named lease unless another holder has an unexpired one.
        Returns True when `holder` owns the lease afterwards.
        """
        now = utc_now()
        self.execute("""
            INSERT INTO sync_leases(name, holder, acquired_at, expires_at) VALUES(?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                holder = excluded.holder,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE sync_leases.expires_at < ? OR sync_leases.holder = excluded.holder
        """, (name, holder, to_db_timestamp(now),
              to_db_timestamp(now + timedelta(seconds=ttl_seconds)), to_db_timestamp(now)))
        self.commit()

        row = self.fetchone("SELECT holder FROM sync_leases WHERE name = ?", (name,))
        acquired = bool(row) and row[0] == holder
        if not acquired:
            logger.warning(f"Lease '{name}' is held by {row[0] if row else 'unknown'}")
        return acquired

    def release_lease(self, name: str, holder: str) -> None:
        self.execute("DELETE FROM sync_leases WHERE name = ? AND holder = ?", (name, holder))
        self.commit()

    def get_lease(self, name: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone(
            "SELECT holder, acquired_at, expires_at FROM sync_leases WHERE name = ?", (name,)
        )
        if not row:
            return None
        expires_at = dtparser.parse(row[2])
        return {
            "name": name,
            "holder": row[0],
            "acquired_at": row[1],
            "expires_at": row[2],
            "expired": expires_at < utc_now(),
        }

    # ============================================
    # SYNC LOGS & ACTIVITIES
    # ============================================

    def log_sync_operation(self, operation: str, entity_id: Optional[str], status: str, message: str = ""):
        self.execute("""
            INSERT INTO sync_logs(operation, entity_id, status, message)
            VALUES(?, ?, ?, ?)
        """, (operation, entity_id, status, message))
        self.commit()

    def start_activity(self, activity_type: str, start_cursor: str = "0") -> int:
        """Start a new sync activity and return its ID"""
        now = to_db_timestamp(utc_now())

        if self.is_postgres:
            cur = self.execute("""
                INSERT INTO sync_activities(activity_type, started_at, status, start_cursor)
                VALUES(?, ?, 'running', ?)
                RETURNING id
            """, (activity_type, now, start_cursor))
            self.commit()
            return self._db.get_last_insert_id(cur)

        cur = self.execute("""
            INSERT INTO sync_activities(activity_type, started_at, status, start_cursor)
            VALUES(?, ?, 'running', ?)
        """, (activity_type, now, start_cursor))
        self.commit()
        return cur.lastrowid

    def complete_activity(self, activity_id: int, counts: Dict[str, int],
                          next_cursor: str = "0", summary: str = ""):
        """Mark activity as complete with summary stats"""
        self.execute("""
            UPDATE sync_activities
            SET completed_at = ?, status = 'completed', next_cursor = ?,
                processed = ?, created = ?, updated = ?, skipped = ?,
                failed = ?, deleted = ?, summary = ?
            WHERE id = ?
        """, (to_db_timestamp(utc_now()), next_cursor,
              counts.get("processed", 0), counts.get("created", 0), counts.get("updated", 0),
              counts.get("skipped", 0), counts.get("failed", 0), counts.get("deleted", 0),
              summary, activity_id))
        self.commit()

    def fail_activity(self, activity_id: int, error_message: str):
        """Mark activity as failed"""
        self.execute("""
            UPDATE sync_activities
            SET completed_at = ?, status = 'failed', summary = ?
            WHERE id = ?
        """, (to_db_timestamp(utc_now()), error_message, activity_id))
        self.commit()

    def list_activities(self, limit: int = 50) -> List[Dict]:
        """List recent sync activities"""
        rows = self.fetchall("""
            SELECT id, activity_type, started_at, completed_at, status, start_cursor, next_cursor,
                   processed, created, updated, skipped, failed, deleted, summary
            FROM sync_activities
            ORDER BY id DESC
            LIMIT ?
        """, (limit,))
        return [{
            "id": r[0], "activity_type": r[1], "started_at": r[2], "completed_at": r[3],
            "status": r[4], "start_cursor": r[5], "next_cursor": r[6], "processed": r[7],
            "created": r[8], "updated": r[9], "skipped": r[10], "failed": r[11],
            "deleted": r[12], "summary": r[13]
        } for r in rows]
