"""
Process-wide fan-out of bus messages to named subscribers.

Each subscriber owns one bounded queue. Broadcasting never blocks a
publisher for longer than the lag timeout per subscriber: a full queue
causes the message to be dropped for that subscriber and a warning naming
it to be logged.
"""

import logging
import queue
import threading
from typing import Dict, List, Optional

from fsd.messages import Message


logger = logging.getLogger(__name__)

# Upper bound on how long a lagging subscriber may hold up a broadcast
DEFAULT_LAG_TIMEOUT = 1.0


class ReadWriteLock:
    """
    Readers-writer lock.

    Any number of readers may hold the lock together; a writer holds it
    alone. Waiting writers block new readers so they are not starved.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class Subscription:
    """
    A named subscriber's bounded message queue.

    Once closed, the subscription accepts no further writes and readers
    receive None.
    """

    def __init__(self, name: str, maxsize: int):
        self.name = name
        self.maxsize = maxsize
        self._queue: "queue.Queue[Optional[Message]]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, msg: Message, timeout: float) -> bool:
        """
        Enqueue a message, waiting at most `timeout` seconds for room.

        Returns:
            True if enqueued, False if the queue stayed full or is closed
        """
        if self.closed:
            return False
        try:
            if timeout > 0:
                self._queue.put(msg, timeout=timeout)
            else:
                self._queue.put_nowait(msg)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        """
        Dequeue the next message.

        Args:
            timeout: Seconds to wait; None waits until a message arrives

        Returns:
            The next message, or None on timeout or once closed and drained
        """
        try:
            msg = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if msg is None:
            # Leave the sentinel for any other reader
            self._queue.put_nowait(None)
        return msg

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        # Wake blocked readers; pending messages are discarded
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        self._queue.put_nowait(None)


class Broadcaster:
    """
    One-to-many message delivery with per-subscriber backpressure.

    Subscriber names are unique. The registry is guarded by a
    readers-writer lock: broadcasts run concurrently, subscribe and
    unsubscribe are exclusive, so a subscription removed by unsubscribe
    is never written to afterwards.
    """

    def __init__(self, buffer_depth: int, lag_timeout: float = DEFAULT_LAG_TIMEOUT):
        """
        Initialize broadcaster.

        Args:
            buffer_depth: Capacity of each subscriber queue
            lag_timeout: Seconds to wait on a full queue before dropping
        """
        if buffer_depth <= 0:
            raise ValueError(f"buffer_depth must be positive, got {buffer_depth}")
        self.buffer_depth = buffer_depth
        self.lag_timeout = lag_timeout
        self._subscribers: Dict[str, Subscription] = {}
        self._lock = ReadWriteLock()

    def subscribe(self, name: str) -> Subscription:
        """
        Register a new subscriber.

        Raises:
            ValueError: If a subscriber with this name already exists
        """
        subscription = Subscription(name, self.buffer_depth)
        self._lock.acquire_write()
        try:
            if name in self._subscribers:
                raise ValueError(f"Subscriber already registered: {name}")
            self._subscribers[name] = subscription
        finally:
            self._lock.release_write()

        logger.debug(f"Subscribed '{name}' with buffer depth {self.buffer_depth}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber and close its queue. Unknown subscriptions are ignored."""
        self._lock.acquire_write()
        try:
            if self._subscribers.get(subscription.name) is not subscription:
                return
            del self._subscribers[subscription.name]
            subscription.close()
        finally:
            self._lock.release_write()

        logger.debug(f"Unsubscribed '{subscription.name}'")

    def broadcast(self, msg: Message) -> None:
        """
        Deliver a message to every subscriber.

        A subscriber whose queue is still full after the lag timeout misses
        the message and a warning naming it is logged.
        """
        self._lock.acquire_read()
        try:
            for name, subscription in self._subscribers.items():
                if not subscription.put(msg, self.lag_timeout):
                    logger.warning(
                        f"Subscriber '{name}' lagging, dropped message: {msg.to_json()}"
                    )
        finally:
            self._lock.release_read()

    def subscriber_names(self) -> List[str]:
        self._lock.acquire_read()
        try:
            return list(self._subscribers)
        finally:
            self._lock.release_read()
