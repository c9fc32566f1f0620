"""
Watchdog-based filesystem watcher adapter.

Exposes two streams, `events` and `errors`, fed by a watchdog observer.
Watches are non-recursive, one per directory, so the watch set has to be
extended explicitly as new subdirectories appear.

Watchdog folds attribute changes (inotify IN_ATTRIB) into modified events,
so a chmod arrives here as WRITE. CHMOD stays in the bitset for events
from backends that report it separately.

A watched directory that is removed keeps its entry in the watch set but is
marked stale; adding the same path again replaces the dead watch.
"""

from __future__ import annotations

import logging
import queue
import threading
from enum import IntFlag
from pathlib import Path
from typing import Dict, NamedTuple, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from fsd.errors import WatcherError


logger = logging.getLogger(__name__)

# Placed on both streams when the watcher is closed
CLOSED = None


class WatchOp(IntFlag):
    """Bitset of raw filesystem operations."""
    CREATE = 1
    WRITE = 2
    REMOVE = 4
    RENAME = 8
    CHMOD = 16


class WatchEvent(NamedTuple):
    """A raw filesystem notification."""
    path: str
    op: WatchOp


class _EventForwarder(FileSystemEventHandler):
    """Translates watchdog callbacks into WatchEvents on the watcher's streams."""

    def __init__(self, watcher: FsWatcher):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path, WatchOp.CREATE)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event.src_path, WatchOp.WRITE)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self.watcher._mark_stale(event.src_path)
        self._forward(event.src_path, WatchOp.REMOVE)

    def on_moved(self, event: FileSystemEvent) -> None:
        self.watcher._mark_stale(event.src_path)
        self._forward(event.src_path, WatchOp.RENAME)
        if event.dest_path:
            self._forward(event.dest_path, WatchOp.CREATE)

    def _forward(self, path, op: WatchOp) -> None:
        try:
            if isinstance(path, bytes):
                path = path.decode()
            self.watcher._emit(WatchEvent(path=str(path), op=op))
        except Exception as e:
            self.watcher._emit_error(e)


class FsWatcher:
    """
    Filesystem watcher with an explicit, monotonically growing watch set.

    Usage:
        watcher = FsWatcher()
        watcher.start()
        watcher.add("/tmp/fsd")
        event = watcher.events.get()
    """

    def __init__(self, observer: Optional[Observer] = None):
        """
        Initialize watcher.

        Args:
            observer: Watchdog observer to schedule watches on (a new one by default)
        """
        self._observer = observer or Observer()
        self._handler = _EventForwarder(self)
        self._watches: Dict[str, ObservedWatch] = {}
        self._stale: Set[str] = set()
        self._stale_lock = threading.Lock()
        self._lock = threading.Lock()
        self._closed = False

        self.events: "queue.Queue[Optional[WatchEvent]]" = queue.Queue()
        self.errors: "queue.Queue[Optional[Exception]]" = queue.Queue()

    def start(self) -> None:
        """Start the underlying observer thread."""
        self._observer.start()

    def add(self, path: str) -> None:
        """
        Add a directory to the watch set.

        Adding a path that is already watched does nothing, unless the
        directory was removed or moved away since, in which case the old
        watch is dropped and a new one scheduled.

        Raises:
            WatcherError: If the watcher is closed or the path cannot be watched
        """
        path = str(Path(path))
        with self._lock:
            if self._closed:
                raise WatcherError(f"Watcher is closed, cannot add: {path}")
            if path in self._watches:
                with self._stale_lock:
                    stale = path in self._stale
                if not stale:
                    return
                self._unschedule(path)
            try:
                watch = self._observer.schedule(self._handler, path, recursive=False)
            except OSError as e:
                raise WatcherError(f"Failed to watch {path}: {e}") from e
            self._watches[path] = watch

        logger.debug(f"Watching: {path}")

    def watch_list(self) -> Set[str]:
        """Get the set of directories currently watched."""
        with self._lock:
            return set(self._watches)

    def close(self) -> None:
        """Stop watching and close both streams."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping observer: {e}", exc_info=True)
        finally:
            self.events.put(CLOSED)
            self.errors.put(CLOSED)

        logger.debug("Watcher closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit(self, event: WatchEvent) -> None:
        if not self._closed:
            self.events.put(event)

    def _emit_error(self, error: Exception) -> None:
        if not self._closed:
            self.errors.put(error)

    def _mark_stale(self, path) -> None:
        # Runs on the observer thread, which holds the observer lock; must not take self._lock
        if isinstance(path, bytes):
            path = path.decode()
        path = str(Path(path))
        if path in self._watches:
            with self._stale_lock:
                self._stale.add(path)

    def _unschedule(self, path: str) -> None:
        """Drop a stale watch. Caller holds self._lock."""
        watch = self._watches.pop(path)
        with self._stale_lock:
            self._stale.discard(path)
        try:
            self._observer.unschedule(watch)
        except (KeyError, OSError) as e:
            logger.debug(f"Stale watch for {path} already gone: {e}")
        logger.debug(f"Dropped stale watch: {path}")
