"""
Base class for long-lived tasks wired to the broadcaster.

A task's single entry point is run(shutdown). The shared loop waits on the
task's subscription with a bounded timeout, fires the optional periodic
tick, and re-checks the shutdown event on every pass. Errors from one unit
of work are logged and the loop continues.
"""

import logging
import sqlite3
import threading
import time
from typing import Optional

from fsd.broadcaster import Subscription
from fsd.messages import Message


logger = logging.getLogger(__name__)

# Longest a loop waits on its queue before re-checking shutdown
POLL_INTERVAL = 0.1


class Task:
    """
    A long-lived worker consuming bus messages.

    Subclasses set `name`, implement handle_message(), and optionally set
    `tick_interval` with on_tick() and on_start().
    """

    name = "Task"

    # Seconds between on_tick() calls; None disables the ticker
    tick_interval: Optional[float] = None

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    def run(self, shutdown: threading.Event) -> None:
        """Run the event loop until shutdown is set or the subscription closes."""
        logger.info(f"[{self.name}] Task started")

        self._guard("startup", self.on_start, shutdown)

        next_tick = self._next_tick()
        while not shutdown.is_set():
            msg = self.subscription.get(timeout=self._wait_time(next_tick))

            if msg is not None:
                self._guard("message handling", self.handle_message, msg, shutdown)
            elif self.subscription.closed:
                logger.info(f"[{self.name}] Subscription closed")
                break

            if next_tick is not None and time.monotonic() >= next_tick:
                self._guard("periodic work", self.on_tick, shutdown)
                next_tick = self._next_tick()

        self.on_stop()
        logger.info(f"[{self.name}] Got shutdown signal, exiting")

    def on_start(self, shutdown: threading.Event) -> None:
        """Called once before the loop starts."""

    def on_tick(self, shutdown: threading.Event) -> None:
        """Called every tick_interval seconds."""

    def on_stop(self) -> None:
        """Called once after the loop exits."""

    def handle_message(self, msg: Message, shutdown: threading.Event) -> None:
        logger.debug(f"[{self.name}] Got message: {msg.to_json()}")

    def _next_tick(self) -> Optional[float]:
        if self.tick_interval is None:
            return None
        return time.monotonic() + self.tick_interval

    def _wait_time(self, next_tick: Optional[float]) -> float:
        if next_tick is None:
            return POLL_INTERVAL
        return max(0.0, min(POLL_INTERVAL, next_tick - time.monotonic()))

    def _guard(self, what: str, fn, *args) -> None:
        try:
            fn(*args)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"[{self.name}] Error during {what}: {e}")
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected error during {what}: {e}", exc_info=True)
