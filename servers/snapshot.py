"""
Snapshot HTTP server.

Serves the node's snapshot directory read-only, and can ask the running node
to write a fresh file snapshot into that directory.
"""
from __future__ import annotations

import logging
import os
import threading
import uuid
from typing import Any, Dict, Optional

import httpx
from flask import Flask, abort, jsonify, request, send_from_directory
from werkzeug.serving import make_server

from utils import parse_listen_address

logger = logging.getLogger(__name__)

SNAPSHOT_TYPES = ("l4Snapshots", "referrerStates")


def _query_flag(name: str, default: bool) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    abort(400, description=f"{name} must be true or false")


def build_snapshot_request() -> Dict[str, Any]:
    """Reads the snapshot request from the query string of the current request."""
    snapshot_type = request.args.get("type")
    if snapshot_type not in SNAPSHOT_TYPES:
        abort(400, description=f"type must be one of {', '.join(SNAPSHOT_TYPES)}")
    snapshot: Dict[str, Any] = {"type": snapshot_type}
    if snapshot_type == "l4Snapshots":
        snapshot["includeUsers"] = _query_flag("includeUsers", False)
        snapshot["includeTriggerOrders"] = _query_flag("includeTriggerOrders", False)
    return snapshot


def create_snapshot_path(directory: str, snapshot_type: str) -> str:
    return os.path.join(directory, f"{snapshot_type}_{uuid.uuid4().hex}.json")


def create_snapshot_app(
    snapshot_directory: str,
    node_info_url: str,
    client: Optional[httpx.Client] = None,
) -> Flask:
    app = Flask("servers.snapshot")
    directory = os.path.abspath(snapshot_directory)
    http = client or httpx.Client(timeout=60.0)
    if client is None:
        # closed by SnapshotServer.stop
        app.extensions["owned_http_client"] = http

    @app.route("/snapshots/", methods=["GET"])
    def list_snapshots():
        try:
            entries = sorted(
                name for name in os.listdir(directory) if os.path.isfile(os.path.join(directory, name))
            )
        except FileNotFoundError:
            entries = []
        return jsonify({"files": entries})

    @app.route("/snapshots/<path:name>", methods=["GET"])
    def get_snapshot_file(name: str):
        # send_from_directory rejects paths escaping the directory
        return send_from_directory(directory, name, conditional=True)

    @app.route("/snapshot", methods=["GET"])
    def request_snapshot():
        snapshot = build_snapshot_request()
        include_height = _query_flag("includeHeightInOutput", True)
        stream_contents = _query_flag("streamContents", False)

        out_path = create_snapshot_path(directory, snapshot["type"])
        payload = {
            "type": "fileSnapshot",
            "request": snapshot,
            "includeHeightInOutput": include_height,
            "outPath": out_path,
        }
        try:
            response = http.post(node_info_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Node file snapshot request failed: %s", exc)
            return jsonify({"error": f"node snapshot request failed: {exc}"}), 502

        if not stream_contents:
            return jsonify({"path": out_path})
        if not os.path.isfile(out_path):
            logger.error("Node reported success but %s was not written", out_path)
            return jsonify({"error": "snapshot file was not produced"}), 502
        return send_from_directory(directory, os.path.basename(out_path), mimetype="application/json")

    @app.errorhandler(400)
    def bad_request(exc):
        return jsonify({"error": getattr(exc, "description", str(exc))}), 400

    return app


class SnapshotServer:
    """Runs the snapshot app on a werkzeug server in a daemon thread."""

    def __init__(self, app: Flask, listen_address: str) -> None:
        self.app = app
        self.listen_address = listen_address
        self.host, self.port = parse_listen_address(listen_address)
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        """Binds and starts serving. Raises OSError when the address is unavailable."""
        if self._server is not None:
            logger.warning("Snapshot server already running on %s", self.listen_address)
            return
        self._server = make_server(self.host, self.port, self.app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="SnapshotServerThread", daemon=True
        )
        self._thread.start()
        logger.info("Snapshot server started on http://%s:%s", self.host, self.bound_port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            if self._thread is not None:
                self._thread.join(timeout=1)
            self._server = None
            self._thread = None
            logger.info("Snapshot server on %s stopped", self.listen_address)
        client = self.app.extensions.pop("owned_http_client", None)
        if client is not None:
            client.close()
