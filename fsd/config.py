"""
Configuration management for fsd.

Loads the TOML configuration file, writing one with defaults when it does
not exist, and produces an immutable FsdConfig that is passed explicitly
to every component.
"""

import logging
import re
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fsd.atomic import AtomicFileWriter


logger = logging.getLogger(__name__)

# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".fsd"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"
DB_FILENAME = "fsd.db"

DEFAULT_METADATA_UPDATE_INTERVAL = timedelta(milliseconds=500)
DEFAULT_COMPACTION_INTERVAL = timedelta(minutes=1)
DEFAULT_BROADCAST_BUFFER_DEPTH = 1000
DEFAULT_LISTEN_ADDR = "localhost:16000"
DEFAULT_WATCH_DIR = "/tmp/fsd"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """
    Parse a duration.

    Accepts Go-style strings ("500ms", "1m30s", "1.5h"), plain numbers
    (seconds) and timedeltas.

    Raises:
        ValueError: If the value is not a valid duration
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip()
    if not text:
        raise ValueError("Invalid duration: empty string")

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Render a timedelta as a compact Go-style duration string."""
    total_ms = round(value.total_seconds() * 1000)
    if total_ms % 1000:
        return f"{total_ms}ms"

    total_s = total_ms // 1000
    hours, rest = divmod(total_s, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return "".join(parts)


def split_listen_addr(addr: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts.

    Raises:
        ValueError: If there is no port or it is out of range
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address (expected host:port): {addr!r}")
    port_num = int(port)
    if port_num > 65535:
        raise ValueError(f"Invalid port in listen address: {addr!r}")
    return host.strip("[]") or "0.0.0.0", port_num


class FsdConfig(BaseModel):
    """Immutable daemon configuration."""

    model_config = ConfigDict(frozen=True)

    metadata_update_interval: timedelta = Field(
        default=DEFAULT_METADATA_UPDATE_INTERVAL,
        description="Time between metadata snapshots"
    )
    compaction_interval: timedelta = Field(
        default=DEFAULT_COMPACTION_INTERVAL,
        description="Time between compaction passes, also the metadata retention window"
    )
    broadcast_buffer_depth: int = Field(
        default=DEFAULT_BROADCAST_BUFFER_DEPTH,
        gt=0,
        description="Capacity of each subscriber queue"
    )
    listen_addr: str = Field(default=DEFAULT_LISTEN_ADDR, description="HTTP listen address (host:port)")
    watch_dir: str = Field(default=DEFAULT_WATCH_DIR, description="Root directory to watch")
    db_path: str = Field(
        default=str(DEFAULT_CONFIG_DIR / DB_FILENAME),
        description="SQLite database file"
    )

    @field_validator("metadata_update_interval", "compaction_interval", mode="before")
    @classmethod
    def validate_duration(cls, v):
        """Accept Go-style duration strings and seconds."""
        return parse_duration(v)

    @field_validator("metadata_update_interval", "compaction_interval")
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("interval must be positive")
        return v

    @field_validator("listen_addr")
    @classmethod
    def validate_listen_addr(cls, v: str) -> str:
        split_listen_addr(v)
        return v

    @property
    def host(self) -> str:
        return split_listen_addr(self.listen_addr)[0]

    @property
    def port(self) -> int:
        return split_listen_addr(self.listen_addr)[1]

    def with_overrides(self, **overrides) -> "FsdConfig":
        """Return a copy with every non-None override applied (validated)."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return FsdConfig(**data)

    def to_toml(self) -> str:
        """Render the file-backed fields as TOML."""
        return (
            f'metadata_update_interval = "{format_duration(self.metadata_update_interval)}"\n'
            f'compaction_interval = "{format_duration(self.compaction_interval)}"\n'
            f"broadcast_buffer_depth = {self.broadcast_buffer_depth}\n"
            f"listen_addr = {_toml_string(self.listen_addr)}\n"
            f"watch_dir = {_toml_string(self.watch_dir)}\n"
        )


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ConfigManager:
    """
    Loads the fsd configuration file.

    A missing file is created with defaults; an unreadable or invalid file
    falls back to defaults with a warning.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.fsd/config.toml
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.config = self._load_config()

    def _default_config(self) -> FsdConfig:
        # The database lives next to the config file
        return FsdConfig(db_path=str(self.config_file.parent / DB_FILENAME))

    def _load_config(self) -> FsdConfig:
        """Load configuration from file or create default."""
        if not self.config_file.exists():
            return self._create_default_config()

        logger.info(f"Using existing config file: {self.config_file}")

        try:
            with open(self.config_file, "rb") as f:
                data = tomllib.load(f)
        except (tomllib.TOMLDecodeError, OSError) as e:
            logger.warning(f"Failed to decode config file, using defaults: {e}")
            return self._default_config()

        try:
            data.setdefault("db_path", str(self.config_file.parent / DB_FILENAME))
            return FsdConfig(**data)
        except ValidationError as e:
            logger.warning(f"Invalid config file, using defaults: {e}")
            return self._default_config()

    def _create_default_config(self) -> FsdConfig:
        """
        Write the default configuration to disk.

        Raises:
            OSError: If the config directory or file cannot be created
        """
        config = self._default_config()
        self.config_file.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        AtomicFileWriter.write_text(self.config_file, config.to_toml())
        logger.info(f"Created default config file: {self.config_file}")
        return config
