"""Long-lived tasks wired to the event bus."""

from fsd.tasks.base import Task
from fsd.tasks.compaction_task import CompactionTask
from fsd.tasks.fs_task import FsTask
from fsd.tasks.metadata_task import MetadataTask
from fsd.tasks.proc_task import ProcTask
from fsd.tasks.registry import ALL_TASKS, TaskRegistry

__all__ = [
    "Task",
    "CompactionTask",
    "FsTask",
    "MetadataTask",
    "ProcTask",
    "ALL_TASKS",
    "TaskRegistry",
]
