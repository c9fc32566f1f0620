"""
Proc task: dispatches queued commands from the proc table.

Once a second the task selects every row with is_executed = 0 and starts a
worker thread per row. A worker first claims its row with a conditional
UPDATE; only the worker whose UPDATE changes the row runs the command.
Claiming before running means a crash between execution and recording
loses a result rather than running the command twice.
"""

import logging
import sqlite3
import threading
from typing import List, Optional, Set

from fsd.broadcaster import Subscription
from fsd.db import Database, format_timestamp
from fsd.executor import CommandExecutor, CommandResult
from fsd.models import Proc
from fsd.tasks.base import Task


logger = logging.getLogger(__name__)

PROC_POLL_INTERVAL = 1.0

# How long shutdown waits for in-flight workers to record their results
WORKER_JOIN_TIMEOUT = 10.0


class ProcTask(Task):
    """Dispatcher for queued procs."""

    name = "ProcTask"
    tick_interval = PROC_POLL_INTERVAL

    def __init__(
        self,
        db: Database,
        subscription: Subscription,
        executor: Optional[CommandExecutor] = None
    ):
        super().__init__(subscription)
        self.db = db
        self.executor = executor or CommandExecutor()

        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()

    def on_tick(self, shutdown: threading.Event) -> None:
        self.dispatch_pending(shutdown)

    def on_stop(self) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout=WORKER_JOIN_TIMEOUT)
            if worker.is_alive():
                logger.warning(f"Worker '{worker.name}' did not stop gracefully")

    def pending_procs(self) -> List[Proc]:
        """Get all procs not yet executed."""
        with self.db.session() as conn:
            rows = conn.execute(
                "SELECT id, command, args, is_executed, created_at FROM proc WHERE is_executed = 0"
            ).fetchall()
        return Proc.from_rows(rows)

    def dispatch_pending(self, shutdown: threading.Event) -> List[threading.Thread]:
        """Start one worker thread per pending proc."""
        started = []
        for proc in self.pending_procs():
            worker = threading.Thread(
                target=self._worker,
                args=(proc, shutdown),
                name=f"{self.name}-Worker-{proc.id}",
                daemon=True
            )
            with self._workers_lock:
                self._workers.add(worker)
            worker.start()
            started.append(worker)
        return started

    def _worker(self, proc: Proc, shutdown: threading.Event) -> None:
        try:
            self.execute_proc(proc, shutdown)
        except sqlite3.Error as e:
            logger.error(f"[proc {proc.id}] Database error: {e}")
        except Exception as e:
            logger.error(f"[proc {proc.id}] Unexpected error: {e}", exc_info=True)
        finally:
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

    def execute_proc(self, proc: Proc, shutdown: threading.Event) -> Optional[CommandResult]:
        """
        Claim, run and record one proc.

        Returns:
            The command result, or None if another worker claimed the row
        """
        if not self.claim(proc.id):
            logger.debug(f"[proc {proc.id}] Already claimed, skipping")
            return None

        # Arguments never contain whitespace, see fsd.procs
        args = proc.args.split()
        result = self.executor.run(proc.command, args, shutdown)
        self.record_result(proc, result)
        return result

    def claim(self, proc_id: int) -> bool:
        """Atomically mark a proc executed. Returns False if it already was."""
        with self.db.session() as conn:
            cursor = conn.execute(
                "UPDATE proc SET is_executed = 1 WHERE id = ? AND is_executed = 0",
                (proc_id,)
            )
            return cursor.rowcount == 1

    def record_result(self, proc: Proc, result: CommandResult) -> None:
        """
        Insert the proc_results row for a proc.

        Raises:
            sqlite3.IntegrityError: If a result for this id already exists
        """
        stderr = result.stderr
        if result.error:
            stderr = f"{stderr}\n{result.error}" if stderr else result.error

        with self.db.session() as conn:
            conn.execute(
                "INSERT INTO proc_results (id, stdout, stderr, created_at) VALUES (?, ?, ?, ?)",
                (proc.id, result.stdout, stderr, format_timestamp(proc.created_at))
            )

        logger.info(f"[proc {proc.id}] Result saved")
