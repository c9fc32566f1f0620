"""
Compaction task: periodically asks the other tasks to trim their history.

This is retention, not storage-level compaction: each tick publishes a
Compact message and the FS and metadata tasks delete their old rows.
"""

import logging
import threading
from datetime import timedelta

from fsd.broadcaster import Broadcaster, Subscription
from fsd.messages import Message
from fsd.tasks.base import Task


logger = logging.getLogger(__name__)


class CompactionTask(Task):
    """Ticker publishing Compact messages."""

    name = "CompactionTask"

    def __init__(
        self,
        broadcaster: Broadcaster,
        subscription: Subscription,
        compaction_interval: timedelta
    ):
        super().__init__(subscription)
        self.broadcaster = broadcaster
        self.tick_interval = compaction_interval.total_seconds()

    def on_tick(self, shutdown: threading.Event) -> None:
        logger.info("Beginning compaction operation")
        self.broadcaster.broadcast(Message.compact())
