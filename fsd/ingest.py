"""
Ingest loop: the single reader of the watcher's event and error streams.

Every filesystem event becomes a bus message; watcher errors are logged
and do not stop the pipeline. Closing either stream ends the loop.
"""

import logging
import queue
import threading

from fsd.broadcaster import Broadcaster
from fsd.messages import Message
from fsd.watcher import CLOSED, FsWatcher


logger = logging.getLogger(__name__)

# How long one read waits before re-checking shutdown
POLL_INTERVAL = 0.1


class EventIngest:
    """Forwards watcher events onto the broadcaster."""

    def __init__(self, watcher: FsWatcher, broadcaster: Broadcaster):
        self.watcher = watcher
        self.broadcaster = broadcaster
        self._thread = None

    def start(self, shutdown: threading.Event) -> threading.Thread:
        """Run the ingest loop in a background thread."""
        self._thread = threading.Thread(
            target=self.run,
            args=(shutdown,),
            name="EventIngest",
            daemon=True
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: float = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def run(self, shutdown: threading.Event) -> None:
        """Read both streams until shutdown or until either stream closes."""
        while not shutdown.is_set():
            if not self._drain_errors():
                logger.error("Watcher error stream closed, stopping ingest")
                return

            try:
                event = self.watcher.events.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue

            if event is CLOSED:
                logger.error("Watcher event stream closed, stopping ingest")
                return

            logger.info(f"Received event: {event.op!r} {event.path}")
            self.handle_event(event)

        logger.info("Received shutdown signal, stopping ingest")

    def handle_event(self, event) -> bool:
        """
        Translate one watcher event and publish it.

        Returns:
            True if published, False if the event mapped to an invalid op
        """
        msg = Message.from_watch_event(event)
        if not msg.is_valid:
            logger.error(f"Unrecognized watcher operation {event.op!r} for {event.path}, dropping")
            return False
        self.broadcaster.broadcast(msg)
        return True

    def _drain_errors(self) -> bool:
        """Log pending watcher errors. Returns False once the error stream is closed."""
        while True:
            try:
                error = self.watcher.errors.get_nowait()
            except queue.Empty:
                return True
            if error is CLOSED:
                return False
            logger.error(f"Watcher error: {error}")
