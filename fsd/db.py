"""
SQLite storage for fsd.

Four tables: metadata, disk_stats, proc and proc_results. Connections are
opened per unit of work; the engine's own locking serializes writers.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


# Seconds a writer waits on the engine lock before giving up
BUSY_TIMEOUT = 30.0

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

METADATA_CREATE = """
    CREATE TABLE IF NOT EXISTS metadata (
        id INTEGER NOT NULL PRIMARY KEY,
        full_path TEXT NOT NULL,
        size_bytes INTEGER NOT NULL,
        file_mode INTEGER NOT NULL,
        is_directory INTEGER NOT NULL,
        created_at DATETIME NOT NULL,
        modified_at DATETIME NOT NULL
    )
"""

DISK_STATS_CREATE = """
    CREATE TABLE IF NOT EXISTS disk_stats (
        id INTEGER NOT NULL PRIMARY KEY,
        free INTEGER NOT NULL,
        available INTEGER NOT NULL,
        size INTEGER NOT NULL,
        used INTEGER NOT NULL,
        used_pct FLOAT NOT NULL,
        created_at DATETIME NOT NULL
    )
"""

PROC_CREATE = """
    CREATE TABLE IF NOT EXISTS proc (
        id INTEGER NOT NULL PRIMARY KEY,
        command TEXT NOT NULL,
        args TEXT NOT NULL,
        is_executed INTEGER NOT NULL DEFAULT 0,
        created_at DATETIME NOT NULL
    )
"""

PROC_RESULTS_CREATE = """
    CREATE TABLE IF NOT EXISTS proc_results (
        id INTEGER NOT NULL PRIMARY KEY,
        stdout TEXT NOT NULL,
        stderr TEXT NOT NULL,
        created_at DATETIME NOT NULL
    )
"""

SCHEMA = (METADATA_CREATE, DISK_STATS_CREATE, PROC_CREATE, PROC_RESULTS_CREATE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as the UTC text stored in the database."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with row access by name, WAL mode and a busy timeout."""
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class Database:
    """Handle factory for the fsd database file."""

    def __init__(self, path: Path):
        """
        Initialize database handle factory.

        Args:
            path: Path to the SQLite file (parent directories are created)
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def init_schema(self) -> None:
        """Create all tables if they don't exist."""
        with self.session() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside a transaction.

        Commits on success, rolls back on exception, always closes.
        """
        conn = connect(str(self.path))
        try:
            with conn:
                yield conn
        finally:
            conn.close()

