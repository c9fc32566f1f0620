"""
Proc submission: validates requests and queues rows in the proc table.

Supported commands:
- yt-dlp: downloads into WATCH_DIR/<channel-name>/
- mkdir:  creates a directory below WATCH_DIR

The argv tail is stored space-joined and split on whitespace at execution
time, so no argument may contain whitespace.
"""

import logging
import os
from typing import Dict, List, Tuple

from fsd.db import Database, format_timestamp, utcnow
from fsd.errors import ProcValidationError
from fsd.models import Proc, ProcSubmitRequest


logger = logging.getLogger(__name__)

YT_DLP = "yt-dlp"
MKDIR = "mkdir"
PROCS = [YT_DLP, MKDIR]

YT_DLP_DEFAULT_FLAGS: Dict[str, List[str]] = {
    "playlist-end": ["30"],
    "sleep-interval": ["5"],
    "merge-output-format": ["mkv"],
}

# Keys consumed by the yt-dlp builder rather than passed through as flags
_YT_DLP_RESERVED = ("url", "channel-name")


def _first_value(args: Dict[str, List[str]], key: str) -> str:
    """Return the first non-empty value for key or raise a validation error."""
    if key not in args:
        raise ProcValidationError(f"{key} is required")
    values = args[key]
    if not values or not values[0]:
        raise ProcValidationError(f"non-empty {key} is required")
    return values[0]


def _check_no_whitespace(args: Dict[str, List[str]]) -> None:
    for key, values in args.items():
        for token in [key, *values]:
            if any(ch.isspace() for ch in token):
                raise ProcValidationError(
                    f"argument {key!r} contains whitespace, which procs cannot represent"
                )


def resolve_in_watch_dir(watch_dir: str, name: str) -> str:
    """
    Join name below watch_dir, treating a leading '/' as relative.

    Raises:
        ProcValidationError: If the result escapes watch_dir
    """
    root = os.path.normpath(watch_dir)
    path = os.path.normpath(os.path.join(root, name.lstrip("/")))
    if path == root or not path.startswith(root.rstrip("/") + "/"):
        raise ProcValidationError(f"path must stay inside the watch directory: {name}")
    return path


def build_yt_dlp(args: Dict[str, List[str]], watch_dir: str) -> List[str]:
    """
    Build the yt-dlp argv tail.

    The url comes first, then every flag (defaults overridden by the
    request) in sorted order, then the output template.
    """
    url = _first_value(args, "url")
    channel_name = _first_value(args, "channel-name")

    flags = dict(YT_DLP_DEFAULT_FLAGS)
    flags.update({k: v for k, v in args.items() if k not in _YT_DLP_RESERVED})

    argv = [url]
    for key in sorted(flags):
        argv.append(f"--{key}")
        argv.extend(flags[key])

    output_dir = resolve_in_watch_dir(watch_dir, channel_name)
    argv.extend(["-o", f"{output_dir}/%(title)s"])
    return argv


def build_mkdir(args: Dict[str, List[str]], watch_dir: str) -> List[str]:
    """Build the mkdir argv tail: a single directory below watch_dir."""
    dirname = _first_value(args, "dirname")
    return [resolve_in_watch_dir(watch_dir, dirname)]


_BUILDERS = {
    YT_DLP: build_yt_dlp,
    MKDIR: build_mkdir,
}


def build_command(request: ProcSubmitRequest, watch_dir: str) -> Tuple[str, List[str]]:
    """
    Validate a submission and build its command and argv tail.

    Raises:
        ProcValidationError: If the request is invalid
    """
    if not request.command:
        raise ProcValidationError("command is required")

    builder = _BUILDERS.get(request.command)
    if builder is None:
        raise ProcValidationError(
            f"invalid proc: {request.command}, wanted one of {', '.join(PROCS)}"
        )

    _check_no_whitespace(request.args)
    return request.command, builder(request.args, watch_dir)


def submit_proc(db: Database, request: ProcSubmitRequest, watch_dir: str) -> Proc:
    """
    Validate a submission and queue it in the proc table.

    Returns:
        The inserted, not yet executed, proc row

    Raises:
        ProcValidationError: If the request is invalid
        sqlite3.Error: If the insert fails
    """
    command, argv = build_command(request, watch_dir)
    args = " ".join(argv)
    created_at = utcnow()

    with db.session() as conn:
        cursor = conn.execute(
            "INSERT INTO proc (command, args, is_executed, created_at) VALUES (?, ?, ?, ?)",
            (command, args, 0, format_timestamp(created_at))
        )
        proc_id = cursor.lastrowid

    logger.info(f"Queued proc {proc_id}: {command} {args}")
    return Proc(id=proc_id, command=command, args=args, is_executed=0, created_at=created_at)
