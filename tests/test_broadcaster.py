"""Tests for fsd.broadcaster module."""

import logging
import threading
import time

import pytest

from fsd.broadcaster import Broadcaster, ReadWriteLock, Subscription
from fsd.messages import FsdOp, Message


def make_message(i: int) -> Message:
    return Message(name=f"/tmp/fsd/file-{i}", operation=FsdOp.WRITE)


class TestSubscription:
    """Tests for Subscription queue."""

    def test_put_and_get(self):
        """Test basic enqueue and dequeue."""
        sub = Subscription("a", maxsize=2)
        assert sub.put(make_message(1), timeout=0)
        assert sub.get(timeout=0.1) == make_message(1)

    def test_get_timeout_returns_none(self):
        """Test that an empty queue times out with None."""
        sub = Subscription("a", maxsize=2)
        assert sub.get(timeout=0.01) is None

    def test_put_full_returns_false(self):
        """Test that a full queue rejects the message."""
        sub = Subscription("a", maxsize=1)
        assert sub.put(make_message(1), timeout=0)
        assert not sub.put(make_message(2), timeout=0.01)

    def test_close_rejects_writes(self):
        """Test that a closed subscription accepts no messages."""
        sub = Subscription("a", maxsize=2)
        sub.close()
        assert sub.closed
        assert not sub.put(make_message(1), timeout=0)

    def test_close_wakes_reader(self):
        """Test that a blocked reader wakes up when closed."""
        sub = Subscription("a", maxsize=2)
        results = []

        reader = threading.Thread(target=lambda: results.append(sub.get(timeout=5.0)))
        reader.start()
        time.sleep(0.05)
        sub.close()
        reader.join(timeout=2.0)

        assert not reader.is_alive()
        assert results == [None]

    def test_close_is_idempotent(self):
        """Test that closing twice is harmless."""
        sub = Subscription("a", maxsize=2)
        sub.close()
        sub.close()
        assert sub.get(timeout=0.01) is None
        assert sub.get(timeout=0.01) is None


class TestReadWriteLock:
    """Tests for ReadWriteLock."""

    def test_readers_share(self):
        """Test that two readers can hold the lock together."""
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def second_reader():
            lock.acquire_read()
            acquired.set()
            lock.release_read()

        t = threading.Thread(target=second_reader)
        t.start()
        assert acquired.wait(timeout=1.0)
        t.join()
        lock.release_read()

    def test_writer_excludes_readers(self):
        """Test that a reader waits while a writer holds the lock."""
        lock = ReadWriteLock()
        lock.acquire_write()
        acquired = threading.Event()

        def reader():
            lock.acquire_read()
            acquired.set()
            lock.release_read()

        t = threading.Thread(target=reader)
        t.start()
        assert not acquired.wait(timeout=0.1)
        lock.release_write()
        assert acquired.wait(timeout=1.0)
        t.join()


class TestBroadcaster:
    """Tests for Broadcaster."""

    def test_rejects_non_positive_depth(self):
        """Test that buffer depth must be positive."""
        with pytest.raises(ValueError):
            Broadcaster(buffer_depth=0)

    def test_subscribe_duplicate_name(self, broadcaster):
        """Test that subscriber names are unique."""
        broadcaster.subscribe("FsTask")
        with pytest.raises(ValueError, match="already registered"):
            broadcaster.subscribe("FsTask")

    def test_broadcast_reaches_every_subscriber(self, broadcaster):
        """Test fan-out to all subscribers."""
        a = broadcaster.subscribe("a")
        b = broadcaster.subscribe("b")

        broadcaster.broadcast(make_message(1))

        assert a.get(timeout=0.1) == make_message(1)
        assert b.get(timeout=0.1) == make_message(1)

    def test_per_subscriber_fifo(self, broadcaster):
        """Test that each subscriber sees messages in publish order."""
        sub = broadcaster.subscribe("a")
        for i in range(5):
            broadcaster.broadcast(make_message(i))

        received = [sub.get(timeout=0.1) for _ in range(5)]
        assert received == [make_message(i) for i in range(5)]

    def test_unsubscribe_closes_queue(self, broadcaster):
        """Test that unsubscribed subscribers are closed and skipped."""
        sub = broadcaster.subscribe("a")
        broadcaster.unsubscribe(sub)

        assert sub.closed
        assert "a" not in broadcaster.subscriber_names()

        broadcaster.broadcast(make_message(1))
        assert sub.get(timeout=0.01) is None

    def test_unsubscribe_twice(self, broadcaster):
        """Test that unsubscribe is idempotent."""
        sub = broadcaster.subscribe("a")
        broadcaster.unsubscribe(sub)
        broadcaster.unsubscribe(sub)
        assert broadcaster.subscriber_names() == []

    def test_name_reusable_after_unsubscribe(self, broadcaster):
        """Test that a name can be registered again after unsubscribe."""
        sub = broadcaster.subscribe("a")
        broadcaster.unsubscribe(sub)
        again = broadcaster.subscribe("a")
        assert again is not sub

    def test_lagging_subscriber_drops_and_warns(self, caplog):
        """Test that a stalled subscriber loses messages without blocking others."""
        broadcaster = Broadcaster(buffer_depth=1, lag_timeout=0.01)
        fast = broadcaster.subscribe("fast")
        slow = broadcaster.subscribe("slow")

        with caplog.at_level(logging.WARNING, logger="fsd.broadcaster"):
            delivered = []
            for i in range(3):
                broadcaster.broadcast(make_message(i))
                delivered.append(fast.get(timeout=0.1))

        assert delivered == [make_message(i) for i in range(3)]
        assert slow.get(timeout=0.01) == make_message(0)
        assert slow.get(timeout=0.01) is None
        assert "Subscriber 'slow' lagging" in caplog.text

    def test_stalled_subscriber_bounded_publish(self):
        """Test that publishing to a stalled subscriber finishes in bounded time."""
        broadcaster = Broadcaster(buffer_depth=100, lag_timeout=0.001)
        fast = broadcaster.subscribe("A")
        broadcaster.subscribe("B")

        received = []

        def consume():
            while len(received) < 1000:
                msg = fast.get(timeout=2.0)
                if msg is None:
                    return
                received.append(msg)

        consumer = threading.Thread(target=consume)
        consumer.start()

        started = time.monotonic()
        for i in range(1000):
            broadcaster.broadcast(make_message(i))
        elapsed = time.monotonic() - started

        consumer.join(timeout=5.0)
        assert received == [make_message(i) for i in range(1000)]
        # 900 drops at 1ms each, with generous headroom
        assert elapsed < 10.0

    def test_concurrent_unsubscribe_and_broadcast(self, broadcaster):
        """Test that broadcasting while unsubscribing never raises."""
        subs = [broadcaster.subscribe(f"s{i}") for i in range(5)]
        errors = []

        def publish():
            try:
                for i in range(200):
                    broadcaster.broadcast(make_message(i))
            except Exception as e:
                errors.append(e)

        publisher = threading.Thread(target=publish)
        publisher.start()
        for sub in subs:
            broadcaster.unsubscribe(sub)
        publisher.join(timeout=30.0)

        assert errors == []
        assert all(sub.closed for sub in subs)

    def test_fan_out_with_slow_subscriber(self, caplog):
        """Test that a fast subscriber gets everything while a stalled one keeps its buffer."""
        broadcaster = Broadcaster(buffer_depth=2, lag_timeout=0.05)
        fast = broadcaster.subscribe("A")
        slow = broadcaster.subscribe("B")
        received = []

        started = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="fsd.broadcaster"):
            for i in range(1, 11):
                broadcaster.broadcast(make_message(i))
                received.append(fast.get(timeout=0.1))
        elapsed = time.monotonic() - started

        assert received == [make_message(i) for i in range(1, 11)]
        assert slow.qsize() == 2
        drops = [r for r in caplog.records if "Subscriber 'B' lagging" in r.getMessage()]
        assert len(drops) >= 7
        assert elapsed < 10.0
