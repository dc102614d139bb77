"""
Relational storage backend for the validation platform.

Two engines are supported behind one small interface:

- SQLite (``sqlite3``) for local development, a single file on disk
- PostgreSQL (``psycopg2``) for deployments, selected by ``DATABASE_URL``

Queries are written once with ``?`` placeholders and rewritten for the
PostgreSQL driver. Rows come back as mappings (``sqlite3.Row`` or
``RealDictCursor`` rows) so callers can index them by column name either way.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

BACKEND_SQLITE = "sqlite"
BACKEND_POSTGRES = "postgres"

# SQLite busy timeout, seconds. Writers queue behind BEGIN IMMEDIATE for at most this long.
SQLITE_TIMEOUT = 30


class StorageError(Exception):
    """The backing store failed or is unavailable."""


class DuplicateKeyError(StorageError):
    """A write violated a primary key or uniqueness constraint."""


SCHEMA = {
    BACKEND_SQLITE: [
        """
        CREATE TABLE IF NOT EXISTS slices (
            id TEXT PRIMARY KEY,
            conversation_id TEXT,
            context TEXT,
            focus_turns TEXT,
            hybrid_predictions TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS assignments (
            participant_id TEXT NOT NULL,
            slice_id TEXT NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            assigned_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (participant_id, slice_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS annotations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            participant_id TEXT NOT NULL,
            slice_id TEXT NOT NULL,
            interaction_types TEXT,
            curiosity_types TEXT,
            routing_validation TEXT,
            annotation_time_seconds INTEGER DEFAULT 0,
            submitted_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_assignments_slice ON assignments(slice_id)",
        "CREATE INDEX IF NOT EXISTS idx_annotations_participant ON annotations(participant_id, submitted_at)",
    ],
    BACKEND_POSTGRES: [
        """
        CREATE TABLE IF NOT EXISTS slices (
            id TEXT PRIMARY KEY,
            conversation_id TEXT,
            context TEXT,
            focus_turns TEXT,
            hybrid_predictions TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS assignments (
            participant_id TEXT NOT NULL,
            slice_id TEXT NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (participant_id, slice_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS annotations (
            id SERIAL PRIMARY KEY,
            participant_id TEXT NOT NULL,
            slice_id TEXT NOT NULL,
            interaction_types TEXT,
            curiosity_types TEXT,
            routing_validation TEXT,
            annotation_time_seconds INTEGER DEFAULT 0,
            submitted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_assignments_slice ON assignments(slice_id)",
        "CREATE INDEX IF NOT EXISTS idx_annotations_participant ON annotations(participant_id, submitted_at)",
    ],
}


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise driver exceptions as StorageError / DuplicateKeyError."""
    try:
        yield
    except (sqlite3.IntegrityError, psycopg2.IntegrityError) as e:
        raise DuplicateKeyError(str(e)) from e
    except (sqlite3.Error, psycopg2.Error) as e:
        raise StorageError(str(e)) from e


class Connection:
    """Thin wrapper giving both drivers a ``conn.execute(sql, params)`` API."""

    def __init__(self, raw, backend: str):
        self.raw = raw
        self.backend = backend

    def _sql(self, sql: str) -> str:
        if self.backend == BACKEND_POSTGRES:
            return sql.replace("?", "%s")
        return sql

    def execute(self, sql: str, params: Sequence = ()):
        if self.backend == BACKEND_SQLITE:
            return self.raw.execute(sql, tuple(params))
        cursor = self.raw.cursor(cursor_factory=RealDictCursor)
        cursor.execute(self._sql(sql), tuple(params))
        return cursor

    def executemany(self, sql: str, seq_of_params: Iterable[Sequence]):
        rows = [tuple(p) for p in seq_of_params]
        if self.backend == BACKEND_SQLITE:
            return self.raw.executemany(sql, rows)
        cursor = self.raw.cursor()
        cursor.executemany(self._sql(sql), rows)
        return cursor

    def insert_returning_id(self, sql: str, params: Sequence) -> int:
        """Run an INSERT into a table with an auto-assigned ``id`` and return it."""
        if self.backend == BACKEND_SQLITE:
            return self.raw.execute(sql, tuple(params)).lastrowid
        cursor = self.raw.cursor()
        cursor.execute(self._sql(sql) + " RETURNING id", tuple(params))
        return cursor.fetchone()[0]


class Database:
    """
    Connection factory for the selected engine.

    A connection is opened per unit of work and closed afterwards, like the
    rest of the app's ``with get_db() as conn:`` blocks. ``transaction()`` is
    the only place writes that must be all-or-nothing should happen.
    """

    def __init__(self, url: Optional[str] = None, path: Optional[Path] = None):
        if url:
            self.backend = BACKEND_POSTGRES
            self.url = url
            self.path = None
        else:
            self.backend = BACKEND_SQLITE
            self.url = None
            self.path = Path(path or "validation.db")

    def describe(self) -> str:
        if self.backend == BACKEND_POSTGRES:
            return "postgres"
        return f"sqlite:{self.path}"

    def _connect(self):
        if self.backend == BACKEND_POSTGRES:
            return psycopg2.connect(self.url)
        # Autocommit mode: transactions are opened explicitly in transaction()
        conn = sqlite3.connect(self.path, timeout=SQLITE_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Open a connection for reads or single-statement writes."""
        with translate_errors():
            raw = self._connect()
            try:
                yield Connection(raw, self.backend)
                if self.backend == BACKEND_POSTGRES:
                    raw.commit()
            except BaseException:
                if self.backend == BACKEND_POSTGRES:
                    raw.rollback()
                raise
            finally:
                raw.close()

    @contextmanager
    def transaction(self, lock_key: Optional[str] = None) -> Iterator[Connection]:
        """
        Run a block as one write transaction, committed only if it exits cleanly.

        With ``lock_key`` concurrent transactions for the same key are
        serialized: SQLite takes the database write lock up front with
        ``BEGIN IMMEDIATE``; PostgreSQL takes a transaction-scoped advisory
        lock on the key's hash. Anything the block reads after entry is
        therefore current with respect to other writers for that key.
        """
        with translate_errors():
            raw = self._connect()
            conn = Connection(raw, self.backend)
            try:
                if self.backend == BACKEND_SQLITE:
                    raw.execute("BEGIN IMMEDIATE")
                elif lock_key is not None:
                    conn.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (lock_key,))
                yield conn
                raw.commit()
            except BaseException:
                raw.rollback()
                raise
            finally:
                raw.close()

    def init_schema(self):
        """Create tables and indexes if they do not exist."""
        with self.transaction() as conn:
            for statement in SCHEMA[self.backend]:
                conn.execute(statement)
        logger.info("Database tables initialized (%s)", self.describe())
