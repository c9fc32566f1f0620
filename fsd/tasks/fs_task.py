"""
FS task: tracks aggregate disk usage of the filesystem holding the root.

Samples on startup, on every non-compact message and every few seconds.
A Compact message trims disk_stats to the newest rows.
"""

import logging
import threading

from fsd.broadcaster import Subscription
from fsd.db import Database, format_timestamp, utcnow
from fsd.fsutil import DiskUsage
from fsd.messages import FsdOp, Message
from fsd.tasks.base import Task


logger = logging.getLogger(__name__)

DISK_SAMPLE_INTERVAL = 5.0

# disk_stats rows kept by compaction
DISK_STATS_RETAINED = 5


class FsTask(Task):
    """Disk usage sampler."""

    name = "FsTask"
    tick_interval = DISK_SAMPLE_INTERVAL

    def __init__(
        self,
        root_path: str,
        db: Database,
        subscription: Subscription,
        retained: int = DISK_STATS_RETAINED
    ):
        super().__init__(subscription)
        self.root_path = root_path
        self.db = db
        self.retained = retained

    def on_start(self, shutdown: threading.Event) -> None:
        self.record_disk_stats()

    def on_tick(self, shutdown: threading.Event) -> None:
        self.record_disk_stats()

    def handle_message(self, msg: Message, shutdown: threading.Event) -> None:
        if msg.operation is FsdOp.COMPACT:
            self.compact()
        else:
            self.record_disk_stats()

    def record_disk_stats(self) -> DiskUsage:
        """Sample disk usage for the root and insert a disk_stats row."""
        usage = DiskUsage.sample(self.root_path)
        with self.db.session() as conn:
            conn.execute(
                """
                INSERT INTO disk_stats (free, available, size, used, used_pct, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    usage.free,
                    usage.available,
                    usage.size,
                    usage.used,
                    usage.used_pct,
                    format_timestamp(utcnow()),
                )
            )
        return usage

    def compact(self) -> int:
        """
        Keep only the newest disk_stats rows.

        Returns:
            Number of rows deleted
        """
        with self.db.session() as conn:
            cursor = conn.execute(
                """
                DELETE FROM disk_stats
                WHERE id NOT IN (
                    SELECT id FROM disk_stats
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                )
                """,
                (self.retained,)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted old records from disk_stats: {deleted} rows")
        return deleted
