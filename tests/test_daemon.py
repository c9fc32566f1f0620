"""Tests for fsd.daemon module."""

import json
import time
import urllib.request
from datetime import timedelta

import pytest

from fsd.daemon import FsdDaemon, StartupError, build_parser, load_config


def wait_until(predicate, timeout=10.0, interval=0.05):
    """Poll until predicate is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


def get_json(port, path):
    with urllib.request.urlopen(f"http://127.0.0.1:{port}{path}", timeout=5) as resp:
        return json.loads(resp.read())


@pytest.fixture
def daemon(config):
    """Start a daemon on an ephemeral port and stop it afterwards."""
    d = FsdDaemon(config)
    d.start()
    yield d
    d.stop()


class TestArguments:
    """Tests for command-line parsing."""

    def test_overrides_applied(self, temp_dir):
        """Test that flags override values from the config file."""
        args = build_parser().parse_args([
            "--config", str(temp_dir / "config.toml"),
            "--metadata-update-interval", "250ms",
            "--compaction-interval", "2m",
            "--broadcast-buffer-depth", "50",
            "--listen-addr", "127.0.0.1:17000",
            "--watch-dir", str(temp_dir / "root"),
        ])

        config = load_config(args)

        assert config.metadata_update_interval == timedelta(milliseconds=250)
        assert config.compaction_interval == timedelta(minutes=2)
        assert config.broadcast_buffer_depth == 50
        assert config.listen_addr == "127.0.0.1:17000"
        assert config.watch_dir == str(temp_dir / "root")
        assert config.db_path == str(temp_dir / "fsd.db")

    def test_unset_flags_keep_file_values(self, temp_dir):
        config_file = temp_dir / "config.toml"
        config_file.write_text("broadcast_buffer_depth = 7\n")

        config = load_config(build_parser().parse_args(["--config", str(config_file)]))

        assert config.broadcast_buffer_depth == 7

    def test_invalid_duration_flag(self, temp_dir):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--metadata-update-interval", "soon"])


class TestFsdDaemon:
    """Tests for FsdDaemon lifecycle."""

    def test_creates_missing_root(self, config, temp_dir):
        """Test that a missing watch directory is created."""
        root = temp_dir / "new-root"
        d = FsdDaemon(config.with_overrides(watch_dir=str(root)))
        d.start()
        try:
            assert root.is_dir()
            assert str(root) in d.watcher.watch_list()
        finally:
            d.stop()

    def test_startup_failure(self, config, temp_dir):
        """Test that an unusable database path fails startup with status 1."""
        blocker = temp_dir / "blocker"
        blocker.write_text("")
        d = FsdDaemon(config.with_overrides(db_path=str(blocker / "fsd.db")))

        with pytest.raises(StartupError):
            d.start()
        d.stop()

    def test_run_returns_one_on_startup_failure(self, config, temp_dir):
        blocker = temp_dir / "blocker"
        blocker.write_text("")
        d = FsdDaemon(config.with_overrides(db_path=str(blocker / "fsd.db")))
        assert d.run() == 1

    def test_serves_health(self, daemon):
        assert get_json(daemon.http_server.port, "/healthz") == {"status": "ok"}

    def test_new_directory_is_watched(self, daemon, watch_root):
        """Test that a directory created under the root joins the watch set."""
        nested = watch_root / "dir"
        nested.mkdir()

        assert wait_until(lambda: str(nested) in daemon.watcher.watch_list())

        # Events from the new directory now reach the bus
        probe = daemon.broadcaster.subscribe("probe")
        target = nested / "file.txt"
        target.write_text("x")

        seen = []
        assert wait_until(lambda: self._drain(probe, seen) and str(target) in seen)

    def test_removed_file_rows_deleted(self, daemon, watch_root):
        """Test that removing a file deletes its metadata history."""
        target = watch_root / "gone.txt"
        target.write_text("x")
        assert wait_until(lambda: self._count_path(daemon, str(target)) > 0)

        target.unlink()

        assert wait_until(lambda: self._count_path(daemon, str(target)) == 0)

    def test_disk_stats_recorded(self, daemon):
        assert wait_until(lambda: len(get_json(daemon.http_server.port, "/disk")) > 0)
        latest = get_json(daemon.http_server.port, "/disk/latest")
        assert latest["used"] == latest["size"] - latest["free"]

    def test_proc_round_trip(self, daemon, watch_root):
        """Test that a submitted mkdir proc runs once and records its result."""
        port = daemon.http_server.port
        body = json.dumps({"command": "mkdir", "args": {"dirname": ["/test"]}}).encode()
        request = urllib.request.Request(
            f"http://127.0.0.1:{port}/proc",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST"
        )
        with urllib.request.urlopen(request, timeout=5) as resp:
            assert resp.status == 201
            proc_id = json.loads(resp.read())["data"]["id"]

        assert wait_until(lambda: get_json(port, f"/proc/results/{proc_id}")["data"])
        assert (watch_root / "test").is_dir()
        procs = get_json(port, "/proc")["data"]
        assert procs[0]["is_executed"] == 1

    def test_stop_ends_threads(self, config):
        """Test that stop leaves no task or server running."""
        d = FsdDaemon(config)
        d.start()
        d.stop()

        assert d.shutdown_event.is_set()
        assert d.watcher.closed
        assert d.broadcaster.subscriber_names() == []

    @staticmethod
    def _drain(subscription, seen):
        msg = subscription.get(timeout=0.01)
        while msg is not None:
            seen.append(msg.name)
            msg = subscription.get(timeout=0.01)
        return True

    @staticmethod
    def _count_path(daemon, path):
        with daemon.db.session() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM metadata WHERE full_path = ?", (path,)
            ).fetchone()[0]
