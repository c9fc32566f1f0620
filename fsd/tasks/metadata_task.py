"""
Metadata task: keeps a time-stamped history of per-path metadata.

Two loops run side by side:
- the event loop extends the watch set on Create, deletes rows on Remove
  and drops rows older than the compaction interval on Compact;
- the sampler launches a snapshot every update interval. A snapshot walks
  the whole root inside one transaction. Snapshots never overlap: a tick
  that finds one still running is skipped with a warning.
"""

import logging
import sqlite3
import stat
import threading
import time
from datetime import timedelta
from typing import Optional

from fsd.broadcaster import Subscription
from fsd.db import Database, format_timestamp, utcnow
from fsd.errors import WatcherError
from fsd.fsutil import modified_time, permission_bits, walk
from fsd.messages import FsdOp, Message
from fsd.tasks.base import Task
from fsd.watcher import FsWatcher


logger = logging.getLogger(__name__)

INSERT_METADATA = """
    INSERT INTO metadata (full_path, size_bytes, file_mode, is_directory, created_at, modified_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""


class SnapshotCancelled(Exception):
    """Raised inside a snapshot when shutdown is requested mid-walk."""


class MetadataTask(Task):
    """Metadata sampler and watch-set maintainer."""

    name = "MetadataTask"

    def __init__(
        self,
        root_path: str,
        db: Database,
        subscription: Subscription,
        watcher: FsWatcher,
        update_interval: timedelta,
        compaction_interval: timedelta
    ):
        """
        Initialize metadata task.

        Args:
            root_path: Root directory to snapshot
            db: Database handle factory
            subscription: This task's bus subscription
            watcher: Watcher whose watch set is extended on Create
            update_interval: Time between snapshots
            compaction_interval: Rows older than this are dropped on Compact
        """
        super().__init__(subscription)
        self.root_path = root_path
        self.db = db
        self.watcher = watcher
        self.update_interval = update_interval.total_seconds()
        self.compaction_interval = compaction_interval

        self._snapshot_lock = threading.Lock()
        self._snapshot_started = 0.0
        self._snapshot_thread: Optional[threading.Thread] = None
        self._sampler_thread: Optional[threading.Thread] = None

    # Event loop

    def on_start(self, shutdown: threading.Event) -> None:
        self._sampler_thread = threading.Thread(
            target=self._sampler_loop,
            args=(shutdown,),
            name=f"{self.name}-Sampler",
            daemon=True
        )
        self._sampler_thread.start()

    def on_stop(self) -> None:
        for thread in (self._sampler_thread, self._snapshot_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=5.0)

    def handle_message(self, msg: Message, shutdown: threading.Event) -> None:
        logger.debug(f"[{self.name}] Got message: {msg.to_json()}")

        if msg.operation is FsdOp.CREATE:
            self.watch_new_directories(msg.name)
        elif msg.operation is FsdOp.REMOVE:
            self.remove_entries(msg.name)
        elif msg.operation is FsdOp.COMPACT:
            self.compact()
        # Write, Rename and Chmod are picked up by the next snapshot

    def watch_new_directories(self, path: str) -> int:
        """
        Add every directory at or below path to the watch set.

        Returns:
            Number of directories added

        Raises:
            OSError: If the walk fails (e.g. the path vanished)
        """
        added = 0
        for entry, info in walk(path):
            if not stat.S_ISDIR(info.st_mode):
                continue
            try:
                self.watcher.add(entry)
                added += 1
                logger.debug(f"Added subdirectory to watch set: {entry}")
            except WatcherError as e:
                logger.error(f"[{self.name}] {e}")
        return added

    def remove_entries(self, path: str) -> int:
        """Delete every metadata row for path. Returns rows deleted."""
        with self.db.session() as conn:
            cursor = conn.execute("DELETE FROM metadata WHERE full_path = ?", (path,))
            deleted = cursor.rowcount
        logger.debug(f"Removed {deleted} metadata rows for {path}")
        return deleted

    def compact(self) -> int:
        """Delete rows older than the compaction interval. Returns rows deleted."""
        threshold = utcnow() - self.compaction_interval
        with self.db.session() as conn:
            cursor = conn.execute(
                "DELETE FROM metadata WHERE created_at < ?",
                (format_timestamp(threshold),)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted old records from metadata: {deleted} rows")
        return deleted

    # Sampler

    def _sampler_loop(self, shutdown: threading.Event) -> None:
        while not shutdown.wait(self.update_interval):
            self.launch_snapshot(shutdown)
        logger.info(f"[{self.name}-Sampler] Got shutdown signal, exiting")

    def launch_snapshot(self, shutdown: threading.Event) -> bool:
        """
        Start a snapshot in the background unless one is still running.

        Returns:
            True if a snapshot was started, False if skipped
        """
        if not self._snapshot_lock.acquire(blocking=False):
            elapsed = time.monotonic() - self._snapshot_started
            if elapsed >= 2 * self.update_interval:
                logger.warning(
                    f"Metadata snapshot still running after {elapsed:.2f}s, abandoning new attempt"
                )
            else:
                logger.warning("Metadata update overlap, skipping snapshot")
            return False

        self._snapshot_started = time.monotonic()
        try:
            thread = threading.Thread(
                target=self._run_snapshot,
                args=(shutdown,),
                name=f"{self.name}-Snapshot",
                daemon=True
            )
            thread.start()
        except Exception:
            self._snapshot_lock.release()
            raise

        self._snapshot_thread = thread
        return True

    def _run_snapshot(self, shutdown: threading.Event) -> None:
        try:
            count = self.snapshot(shutdown)
            logger.debug(f"Metadata snapshot recorded {count} entries")
        except SnapshotCancelled:
            logger.info(f"[{self.name}] Snapshot cancelled by shutdown")
        except (OSError, sqlite3.Error) as e:
            logger.error(f"[{self.name}] Metadata update failed: {e}")
        except Exception as e:
            logger.error(f"[{self.name}] Metadata update failed: {e}", exc_info=True)
        finally:
            self._snapshot_lock.release()

    def snapshot(self, shutdown: Optional[threading.Event] = None) -> int:
        """
        Walk the root and insert one row per entry, in a single transaction.

        Any walk or insert error rolls the whole snapshot back.

        Returns:
            Number of rows inserted

        Raises:
            OSError: If an entry cannot be read
            sqlite3.Error: If an insert fails
            SnapshotCancelled: If shutdown is set mid-walk
        """
        count = 0
        with self.db.session() as conn:
            for path, info in walk(self.root_path):
                if shutdown is not None and shutdown.is_set():
                    raise SnapshotCancelled()

                conn.execute(
                    INSERT_METADATA,
                    (
                        path,
                        info.st_size,
                        permission_bits(info.st_mode),
                        1 if stat.S_ISDIR(info.st_mode) else 0,
                        format_timestamp(utcnow()),
                        format_timestamp(modified_time(info)),
                    )
                )
                count += 1
        return count

