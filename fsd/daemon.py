"""
Background daemon: watches a root directory, records its history and runs procs.

Wiring:
    watcher -> ingest -> broadcaster -> {FsTask, MetadataTask, CompactionTask, ProcTask}
    CompactionTask -> broadcaster -> Compact (consumed by FsTask and MetadataTask)

A single shutdown event, set by SIGINT/SIGTERM, stops every loop and any
running proc. The HTTP server then gets a short grace window.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from fsd.api import SHUTDOWN_GRACE, HttpServer, create_app
from fsd.broadcaster import Broadcaster
from fsd.config import ConfigManager, FsdConfig, parse_duration
from fsd.db import Database
from fsd.errors import WatcherError
from fsd.ingest import EventIngest
from fsd.tasks import ALL_TASKS, TaskRegistry
from fsd.watcher import FsWatcher


# How long shutdown waits for each task thread
TASK_JOIN_TIMEOUT = 15.0


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Suppress verbose library logging
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


class StartupError(Exception):
    """A component required to run the daemon could not be created."""


class FsdDaemon:
    """
    Owns the broadcaster, watcher, task registry, ingest loop and HTTP server.
    """

    def __init__(self, config: FsdConfig):
        """
        Initialize daemon.

        Args:
            config: Immutable daemon configuration
        """
        self.config = config
        self.shutdown_event = threading.Event()

        self.root_path: Optional[str] = None
        self.db: Optional[Database] = None
        self.broadcaster: Optional[Broadcaster] = None
        self.watcher: Optional[FsWatcher] = None
        self.registry: Optional[TaskRegistry] = None
        self.ingest: Optional[EventIngest] = None
        self.http_server: Optional[HttpServer] = None

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_event.set()

    def _prepare_root(self) -> str:
        root = Path(self.config.watch_dir).expanduser().absolute()
        if not root.exists():
            logger.info(f"Root path does not exist, creating: {root}")
            root.mkdir(mode=0o755, parents=True)
        return str(root)

    def start(self) -> None:
        """
        Start every component.

        Raises:
            StartupError: If the root, database, watcher or listener cannot be set up
        """
        logger.info("=" * 60)
        logger.info("fsd starting")
        logger.info("=" * 60)
        logger.debug(f"Config: {self.config.model_dump()}")

        try:
            self.root_path = self._prepare_root()
        except OSError as e:
            raise StartupError(f"Failed to create root directory {self.config.watch_dir}: {e}") from e

        try:
            self.db = Database(Path(self.config.db_path))
            self.db.init_schema()
        except Exception as e:
            raise StartupError(f"Failed to open database {self.config.db_path}: {e}") from e

        self.watcher = FsWatcher()
        try:
            self.watcher.start()
        except Exception as e:
            raise StartupError(f"Failed to start watcher: {e}") from e

        self.broadcaster = Broadcaster(self.config.broadcast_buffer_depth)

        self.registry = TaskRegistry(
            self.config,
            self.root_path,
            self.db,
            self.broadcaster,
            self.watcher
        )
        self.registry.init(*ALL_TASKS)
        self.registry.run(self.shutdown_event)

        self.ingest = EventIngest(self.watcher, self.broadcaster)
        self.ingest.start(self.shutdown_event)

        try:
            self.watcher.add(self.root_path)
        except WatcherError as e:
            raise StartupError(str(e)) from e
        logger.info(f"Watching root: {self.root_path}")

        try:
            app = create_app(self.config, self.db)
            self.http_server = HttpServer(app, self.config.host, self.config.port)
        except OSError as e:
            raise StartupError(f"Failed to listen on {self.config.listen_addr}: {e}") from e
        self.http_server.start()

    def wait(self) -> None:
        """Block until shutdown is requested."""
        while not self.shutdown_event.wait(timeout=1.0):
            pass

    def stop(self) -> None:
        """Perform graceful shutdown."""
        logger.info("=" * 60)
        logger.info("fsd shutting down")
        logger.info("=" * 60)

        self.shutdown_event.set()

        if self.http_server is not None:
            self.http_server.shutdown(SHUTDOWN_GRACE)

        if self.registry is not None:
            logger.info("Waiting for tasks to stop...")
            self.registry.join(timeout=TASK_JOIN_TIMEOUT)

        if self.ingest is not None:
            self.ingest.join(timeout=5.0)

        if self.watcher is not None:
            self.watcher.close()

        logger.info("Daemon stopped")

    def run(self) -> int:
        """Start, wait for a shutdown signal, stop. Returns the exit status."""
        try:
            self.start()
        except StartupError as e:
            logger.error(f"Startup failed: {e}")
            self.stop()
            return 1

        self.wait()
        self.stop()
        return 0


def _duration(value: str):
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fsd",
        description="Filesystem watch daemon"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: ~/.fsd/config.toml)"
    )
    parser.add_argument(
        "--metadata-update-interval",
        type=_duration,
        default=None,
        help="Time between metadata snapshots, e.g. 500ms"
    )
    parser.add_argument(
        "--compaction-interval",
        type=_duration,
        default=None,
        help="Time between compaction passes, e.g. 1m"
    )
    parser.add_argument(
        "--broadcast-buffer-depth",
        type=int,
        default=None,
        help="Capacity of each subscriber queue"
    )
    parser.add_argument(
        "--listen-addr",
        default=None,
        help="HTTP listen address (host:port)"
    )
    parser.add_argument(
        "--watch-dir",
        default=None,
        help="Root directory to watch"
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database file (default: next to the config file)"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    return parser


def load_config(args: argparse.Namespace) -> FsdConfig:
    """Load the config file and apply command-line overrides."""
    config = ConfigManager(args.config).config
    return config.with_overrides(
        metadata_update_interval=args.metadata_update_interval,
        compaction_interval=args.compaction_interval,
        broadcast_buffer_depth=args.broadcast_buffer_depth,
        listen_addr=args.listen_addr,
        watch_dir=args.watch_dir,
        db_path=args.db_path,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Daemon entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    daemon = FsdDaemon(config)
    daemon.install_signal_handlers()
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
