"""Test fixtures for fsd tests."""

import pytest
import tempfile
import shutil
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import Mock

from fsd.broadcaster import Broadcaster
from fsd.config import FsdConfig
from fsd.db import Database
from fsd.watcher import FsWatcher


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def watch_root(temp_dir):
    """Create the root directory the daemon would watch."""
    root = temp_dir / "watch"
    root.mkdir()
    return root


@pytest.fixture
def db(temp_dir):
    """Create a database with the full schema."""
    database = Database(temp_dir / "state" / "fsd.db")
    database.init_schema()
    return database


@pytest.fixture
def config(temp_dir, watch_root):
    """Create a config pointing at the temp root and database."""
    return FsdConfig(
        metadata_update_interval=timedelta(milliseconds=100),
        compaction_interval=timedelta(seconds=60),
        broadcast_buffer_depth=10,
        listen_addr="127.0.0.1:0",
        watch_dir=str(watch_root),
        db_path=str(temp_dir / "state" / "fsd.db"),
    )


@pytest.fixture
def broadcaster():
    """Create a broadcaster with a short lag timeout."""
    return Broadcaster(buffer_depth=10, lag_timeout=0.05)


@pytest.fixture
def shutdown():
    """Create a shutdown event that is always set on teardown."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def mock_watcher():
    """Create a watcher stand-in that records added paths."""
    watcher = Mock(spec=FsWatcher)
    watcher.added = []
    watcher.add.side_effect = watcher.added.append
    return watcher


@pytest.fixture
def count_rows():
    """Return a helper counting rows in a table."""
    def _count(database: Database, table: str) -> int:
        with database.session() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    return _count
