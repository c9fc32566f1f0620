"""
fsd - Filesystem watch daemon.

Watches a root directory, keeps a time-series of file metadata and disk
usage in SQLite, runs queued commands (procs) and serves the data over
HTTP/JSON.

Architecture: one process-wide broadcaster fans watch events out to
long-lived tasks.
- FsTask          - disk usage sampling and trimming
- MetadataTask    - periodic metadata snapshots and compaction
- CompactionTask  - emits the periodic Compact message
- ProcTask        - executes queued procs and records their output
"""

__version__ = "0.1.0"

from fsd.config import ConfigManager, FsdConfig, DEFAULT_CONFIG_FILE
from fsd.messages import FsdOp, Message
from fsd.broadcaster import Broadcaster, Subscription
from fsd.watcher import FsWatcher, WatchEvent, WatchOp
from fsd.db import Database

__all__ = [
    # Config
    "ConfigManager",
    "FsdConfig",
    "DEFAULT_CONFIG_FILE",
    # Messages
    "FsdOp",
    "Message",
    # Components
    "Broadcaster",
    "Subscription",
    "FsWatcher",
    "WatchEvent",
    "WatchOp",
    "Database",
]
