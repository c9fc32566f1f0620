"""
External command execution with cancellation.

Runs a command with captured stdout/stderr. The run is bound to a shutdown
event: once it is set the child is terminated (then killed if it does not
exit), so no command outlives the daemon.
"""

import logging
import subprocess
import threading
from typing import List, NamedTuple, Optional


logger = logging.getLogger(__name__)

# How often a running command checks for cancellation
CANCEL_POLL_INTERVAL = 0.1

# Grace period between SIGTERM and SIGKILL on cancellation
KILL_TIMEOUT = 5.0


class CommandResult(NamedTuple):
    """Outcome of one command run."""
    stdout: str
    stderr: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class CommandExecutor:
    """Runs external commands, capturing output in memory."""

    def __init__(
        self,
        poll_interval: float = CANCEL_POLL_INTERVAL,
        kill_timeout: float = KILL_TIMEOUT
    ):
        self.poll_interval = poll_interval
        self.kill_timeout = kill_timeout

    def run(self, command: str, args: List[str], shutdown: threading.Event) -> CommandResult:
        """
        Execute a command until it exits or shutdown is set.

        Args:
            command: Program to run (looked up on PATH)
            args: Argument vector tail
            shutdown: Cancellation signal

        Returns:
            CommandResult with captured streams; `error` describes any failure
        """
        logger.info(f"Executing command: {command} {args}")

        try:
            proc = subprocess.Popen(
                [command, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace"
            )
        except OSError as e:
            error = f"Command failed to start: {e}"
            logger.error(error)
            return CommandResult(stdout="", stderr="", error=error)

        cancelled = False
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if shutdown.is_set() and not cancelled:
                    cancelled = True
                    logger.info(f"Cancelling command {command} (pid {proc.pid})")
                    proc.terminate()
                    stdout, stderr = self._wait_or_kill(proc)
                    break

        if cancelled:
            error = f"Command cancelled: exit status {proc.returncode}"
        elif proc.returncode != 0:
            error = f"Command failed: exit status {proc.returncode}"
        else:
            return CommandResult(stdout=stdout, stderr=stderr)

        logger.error(f"{error}\nStderr: {stderr}")
        return CommandResult(stdout=stdout, stderr=stderr, error=error)

    def _wait_or_kill(self, proc: subprocess.Popen):
        try:
            return proc.communicate(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Command (pid {proc.pid}) ignored SIGTERM, killing")
            proc.kill()
            return proc.communicate()
