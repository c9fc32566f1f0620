"""Tests for fsd.tasks.registry module."""

from datetime import timedelta

import pytest

from fsd.broadcaster import Broadcaster
from fsd.messages import Message
from fsd.tasks import ALL_TASKS, CompactionTask, FsTask, MetadataTask, ProcTask, TaskRegistry


@pytest.fixture
def registry(config, watch_root, db, mock_watcher):
    return TaskRegistry(config, str(watch_root), db, Broadcaster(buffer_depth=10), mock_watcher)


class TestTaskRegistry:
    """Tests for TaskRegistry."""

    def test_init_all(self, registry):
        """Test that every task is built and subscribed under its name."""
        registry.init(*ALL_TASKS)

        assert isinstance(registry.tasks[FsTask.name], FsTask)
        assert isinstance(registry.tasks[MetadataTask.name], MetadataTask)
        assert isinstance(registry.tasks[CompactionTask.name], CompactionTask)
        assert isinstance(registry.tasks[ProcTask.name], ProcTask)
        assert sorted(registry.broadcaster.subscriber_names()) == sorted(ALL_TASKS)

    def test_compaction_interval_from_config(self, registry, config):
        registry.init(CompactionTask.name)
        task = registry.tasks[CompactionTask.name]
        assert task.tick_interval == config.compaction_interval.total_seconds()

    def test_unknown_task(self, registry):
        with pytest.raises(ValueError, match="Unknown task"):
            registry.init("NoSuchTask")

    def test_duplicate_task(self, registry):
        registry.init(FsTask.name)
        with pytest.raises(ValueError):
            registry.init(FsTask.name)

    def test_run_and_join(self, registry, shutdown):
        """Test that tasks stop and unsubscribe on shutdown."""
        registry.init(*ALL_TASKS)
        registry.run(shutdown)

        shutdown.set()
        registry.join(timeout=5.0)

        assert registry.broadcaster.subscriber_names() == []
        assert all(sub.closed for sub in (t.subscription for t in registry.tasks.values()))


class TestCompactionTask:
    """Tests for CompactionTask."""

    def test_tick_broadcasts_compact(self, shutdown):
        """Test that every tick publishes the Compact message."""
        broadcaster = Broadcaster(buffer_depth=10)
        listener = broadcaster.subscribe("listener")
        task = CompactionTask(broadcaster, broadcaster.subscribe(CompactionTask.name), timedelta(seconds=1))

        task.on_tick(shutdown)

        assert listener.get(timeout=0.1) == Message.compact()
