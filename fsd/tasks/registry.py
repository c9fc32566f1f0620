"""
Task registry: builds the configured tasks and runs each in its own thread.
"""

import logging
import threading
from typing import Dict, Optional

from fsd.broadcaster import Broadcaster, Subscription
from fsd.config import FsdConfig
from fsd.db import Database
from fsd.tasks.base import Task
from fsd.tasks.compaction_task import CompactionTask
from fsd.tasks.fs_task import FsTask
from fsd.tasks.metadata_task import MetadataTask
from fsd.tasks.proc_task import ProcTask
from fsd.watcher import FsWatcher


logger = logging.getLogger(__name__)

ALL_TASKS = (FsTask.name, MetadataTask.name, CompactionTask.name, ProcTask.name)


class TaskRegistry:
    """
    Registry of running tasks, keyed by task name.

    Each task is subscribed to the broadcaster under its own name and is
    unsubscribed when its loop exits.
    """

    def __init__(
        self,
        config: FsdConfig,
        root_path: str,
        db: Database,
        broadcaster: Broadcaster,
        watcher: FsWatcher
    ):
        self.config = config
        self.root_path = root_path
        self.db = db
        self.broadcaster = broadcaster
        self.watcher = watcher

        self.tasks: Dict[str, Task] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def init(self, *names: str) -> None:
        """
        Construct and subscribe a task for each name.

        Raises:
            ValueError: If a name is unknown or already registered
        """
        for name in names:
            if name not in ALL_TASKS:
                raise ValueError(f"Unknown task: {name}")
            subscription = self.broadcaster.subscribe(name)
            self.tasks[name] = self._build(name, subscription)

    def _build(self, name: str, subscription: Subscription) -> Task:
        if name == FsTask.name:
            return FsTask(self.root_path, self.db, subscription)
        if name == MetadataTask.name:
            return MetadataTask(
                self.root_path,
                self.db,
                subscription,
                self.watcher,
                update_interval=self.config.metadata_update_interval,
                compaction_interval=self.config.compaction_interval
            )
        if name == CompactionTask.name:
            return CompactionTask(self.broadcaster, subscription, self.config.compaction_interval)
        return ProcTask(self.db, subscription)

    def run(self, shutdown: threading.Event) -> None:
        """Launch every registered task's loop in its own thread."""
        for name, task in self.tasks.items():
            logger.info(f"Starting task: {name}")
            thread = threading.Thread(
                target=self._run_task,
                args=(task, shutdown),
                name=name,
                daemon=True
            )
            self._threads[name] = thread
            thread.start()

    def _run_task(self, task: Task, shutdown: threading.Event) -> None:
        try:
            task.run(shutdown)
        finally:
            self.broadcaster.unsubscribe(task.subscription)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for all task threads to stop."""
        for name, thread in list(self._threads.items()):
            if thread.is_alive():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning(f"Task '{name}' did not stop gracefully")
