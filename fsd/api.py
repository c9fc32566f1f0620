"""
HTTP/JSON API over the fsd database.

API:
    GET  /healthz              -> {status: "ok"}
    GET  /metadata             -> all metadata rows, newest first (404 if none)
    GET  /metadata/latest      -> newest row per path (404 if none)
    GET  /disk                 -> all disk_stats rows, newest first
    GET  /disk/latest          -> newest disk_stats row (404 if none)
    GET  /proc                 -> {data: [proc...], code, message}
    POST /proc                 -> body {command, args: {key: [values]}}; 201 with the queued row
    GET  /proc/available       -> {data: [command...], code, message}
    GET  /proc/results         -> {data: [result...], code, message}
    GET  /proc/results/<id>    -> {data: [result...], code, message}

Handlers only read, except POST /proc which queues a proc row.
"""

import logging
import re
import sqlite3
import threading
import time
import uuid
from typing import Any, Optional

from flask import Flask, Response, current_app, g, jsonify, request
from pydantic import ValidationError
from werkzeug.serving import make_server

from fsd.config import FsdConfig
from fsd.db import Database
from fsd.errors import ProcValidationError
from fsd.models import ApiResponse, DiskStats, MetadataRecord, Proc, ProcResult, ProcSubmitRequest
from fsd.procs import PROCS, submit_proc


logger = logging.getLogger(__name__)

# Grace window for in-flight requests on shutdown
SHUTDOWN_GRACE = 5.0

CORS_ORIGIN_PATTERN = re.compile(r"^https?://")
CORS_ALLOWED_METHODS = "GET, POST, PUT, DELETE"
CORS_ALLOWED_HEADERS = "Accept, Authorization, Content-Type, X-CSRF-Token, x-auth-token"
CORS_EXPOSED_HEADERS = "Link"
CORS_MAX_AGE = "300"

LATEST_METADATA_QUERY = """
    SELECT m.*
    FROM metadata m
    INNER JOIN (
        SELECT full_path, MAX(created_at) AS max_created_at
        FROM metadata
        GROUP BY full_path
    ) latest
    ON m.full_path = latest.full_path AND m.created_at = latest.max_created_at
    ORDER BY m.full_path
"""


def _db() -> Database:
    return current_app.extensions["fsd.db"]


def _config() -> FsdConfig:
    return current_app.extensions["fsd.config"]


def _response(code: int, message: str, data: Optional[Any] = None):
    """Wrap a payload as {data, code, message}."""
    return jsonify(ApiResponse(data=data, code=code, message=message).model_dump(mode="json")), code


def _not_found() -> Response:
    return Response(status=404)


def _query(sql: str, params: tuple = ()) -> list:
    with _db().session() as conn:
        return conn.execute(sql, params).fetchall()


def _dump(models) -> list:
    return [m.model_dump(mode="json") for m in models]


def create_app(config: FsdConfig, db: Database) -> Flask:
    """
    Build the Flask application.

    Args:
        config: Daemon configuration (watch_dir is used for procs)
        db: Database the handlers read from
    """
    app = Flask(__name__)
    app.extensions["fsd.config"] = config
    app.extensions["fsd.db"] = db
    app.url_map.strict_slashes = False

    db.init_schema()

    @app.before_request
    def start_request():
        g.request_id = uuid.uuid4().hex
        g.started_at = time.monotonic()

    @app.after_request
    def finish_request(response: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin and CORS_ORIGIN_PATTERN.match(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = CORS_ALLOWED_METHODS
            response.headers["Access-Control-Allow-Headers"] = CORS_ALLOWED_HEADERS
            response.headers["Access-Control-Expose-Headers"] = CORS_EXPOSED_HEADERS
            response.headers["Access-Control-Max-Age"] = CORS_MAX_AGE
            response.vary.add("Origin")

        request_id = g.get("request_id", "")
        response.headers["X-Request-Id"] = request_id

        latency_ms = (time.monotonic() - g.get("started_at", time.monotonic())) * 1000
        logger.info(
            f"Served {request.method} {request.path} status={response.status_code} "
            f"size={response.content_length or 0} lat={latency_ms:.1f}ms reqId={request_id}"
        )
        return response

    @app.errorhandler(sqlite3.Error)
    def database_error(e):
        logger.error(f"Database error serving {request.path}: {e}")
        return _response(500, "database query failed")

    # Health

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return jsonify({"status": "ok"})

    # Metadata

    @app.route("/metadata", methods=["GET"])
    def get_metadata():
        rows = _query("SELECT * FROM metadata ORDER BY created_at DESC")
        if not rows:
            logger.warning("No metadata found")
            return _not_found()
        return jsonify(_dump(MetadataRecord.from_rows(rows)))

    @app.route("/metadata/latest", methods=["GET"])
    def get_latest_metadata():
        rows = _query(LATEST_METADATA_QUERY)
        if not rows:
            logger.warning("No metadata found")
            return _not_found()
        return jsonify(_dump(MetadataRecord.from_rows(rows)))

    # Disk

    @app.route("/disk", methods=["GET"])
    def get_disk_stats():
        rows = _query("SELECT * FROM disk_stats ORDER BY created_at DESC")
        return jsonify(_dump(DiskStats.from_rows(rows)))

    @app.route("/disk/latest", methods=["GET"])
    def get_latest_disk_stats():
        rows = _query("SELECT * FROM disk_stats ORDER BY created_at DESC LIMIT 1")
        if not rows:
            logger.warning("No disk stats found")
            return _not_found()
        return jsonify(DiskStats.from_row(rows[0]).model_dump(mode="json"))

    # Procs

    @app.route("/proc", methods=["GET"])
    def get_procs():
        rows = _query("SELECT * FROM proc ORDER BY created_at DESC")
        return _response(200, "success", _dump(Proc.from_rows(rows)))

    @app.route("/proc", methods=["POST"])
    def submit():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _response(400, "request body must be a JSON object")

        try:
            proc_request = ProcSubmitRequest.model_validate(body)
            proc = submit_proc(_db(), proc_request, _config().watch_dir)
        except ValidationError as e:
            logger.error(f"Failed to bind request: {e}")
            return _response(400, "invalid request: args must map names to lists of strings")
        except ProcValidationError as e:
            logger.error(f"Failed to bind request: {e}")
            return _response(400, str(e))

        return _response(201, "created", proc.model_dump(mode="json"))

    @app.route("/proc/available", methods=["GET"])
    def get_available_procs():
        return _response(200, "success", PROCS)

    @app.route("/proc/results", methods=["GET"])
    def get_proc_results():
        rows = _query("SELECT * FROM proc_results")
        return _response(200, "success", _dump(ProcResult.from_rows(rows)))

    @app.route("/proc/results/<proc_id>", methods=["GET"])
    def get_proc_result(proc_id: str):
        try:
            proc_id = int(proc_id)
        except ValueError:
            return _response(400, "id must be an integer")

        rows = _query("SELECT * FROM proc_results WHERE id = ?", (proc_id,))
        return _response(200, "success", _dump(ProcResult.from_rows(rows)))

    return app


class HttpServer:
    """Runs the Flask app on a background thread with a bounded shutdown."""

    def __init__(self, app: Flask, host: str, port: int):
        """
        Bind the listening socket.

        Raises:
            OSError: If the address cannot be bound
        """
        self._server = make_server(host, port, app, threaded=True)
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._server.server_port

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="HttpServer",
            daemon=True
        )
        self._thread.start()
        logger.info(f"HTTP server running on {self._server.host}:{self.port}")

    def shutdown(self, grace: float = SHUTDOWN_GRACE) -> bool:
        """
        Stop serving, waiting at most `grace` seconds.

        Returns:
            True if the server stopped within the grace window
        """
        stopper = threading.Thread(target=self._server.shutdown, name="HttpServer-Shutdown", daemon=True)
        stopper.start()
        stopper.join(timeout=grace)
        stopped = not stopper.is_alive()
        self._server.server_close()

        if stopped:
            logger.info("HTTP server shutdown successfully")
        else:
            logger.error(f"HTTP server did not shut down within {grace}s")
        return stopped
