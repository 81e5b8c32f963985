"""
CONTRACT: inline
ROLE: HTTP dashboard: live view, roster, controls, export and report.

INPUTS:
  - Topic: ui.telemetry  Type: TelemetrySnapshot
  - Topic: vision.presence  Type: PresenceSample
OUTPUTS:
  - SessionStateMachine transition calls (start/stop/reset/select/confirm/reject)

CONFIG KEYS:
  - ui.host: bind address
  - ui.port: bind port

PERF / TIMING:
  - frames are JPEG-encoded on request, never in the sampling loop

FAILURE MODES:
  - bind failure -> log bind_failed, thread exits

LOG EVENTS:
  - module=ui.server, event=started, payload keys=host, port
  - module=ui.server, event=bind_failed, payload keys=host, port, error
  - module=ui.server, event=action, payload keys=action, reason

TESTS:
  - tests/test_ui.py covers handle_action and render_frame without a socket

CONTRACT DETAILS:
# Routes

GET  /                  live page
GET  /frame/<cam>.jpg   newest frame with hand keypoints drawn
GET  /telemetry         newest ui.telemetry snapshot
GET  /roster            roster snapshot
GET  /export.csv        roster export (Name, Identifier, Status)
GET  /report            persisted confirmations, newest first
POST /start /stop /reset /confirm /reject
POST /select            identifier from the query string or JSON body
"""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import cv2
import numpy as np

from handcall.attendance.export import export_roster
from handcall.core.bus import drain_latest
from handcall.ui.views.live import live_page


KEYPOINT_COLOR = (204, 255, 0)
ACTIONS = ("start", "stop", "reset", "select", "confirm", "reject")


class UIState:
    """Thread-safe store for telemetry and the newest annotated sample."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._telemetry: Dict[str, Any] = {}
        self._frames: Dict[str, Tuple[Any, List[List[float]]]] = {}

    def update_telemetry(self, telemetry: Dict[str, Any]) -> None:
        with self._lock:
            self._telemetry = telemetry

    def update_frame(self, camera_id: str, frame: Any, keypoints: List[List[float]]) -> None:
        with self._lock:
            self._frames[camera_id] = (frame, keypoints)

    def get_telemetry(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._telemetry)

    def get_frame(self, camera_id: str) -> Optional[Tuple[Any, List[List[float]]]]:
        with self._lock:
            return self._frames.get(camera_id)


class ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


def render_frame(frame: np.ndarray, keypoints: List[List[float]]) -> np.ndarray:
    """Copy of the frame with one dot per keypoint."""
    out = frame.copy()
    for x, y in keypoints:
        cv2.circle(out, (int(round(x)), int(round(y))), 5, KEYPOINT_COLOR, -1)
    return out


def handle_action(machine: Any, action: str, params: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Apply one control action. Returns (http_status, status payload)."""
    if action == "start":
        return 200, machine.start()
    if action == "stop":
        return 200, machine.stop()
    if action == "reset":
        return 200, machine.reset()
    if action == "confirm":
        return 200, machine.confirm()
    if action == "reject":
        return 200, machine.reject()
    if action == "select":
        identifier = params.get("identifier")
        if isinstance(identifier, list):
            identifier = identifier[0] if identifier else None
        return 200, machine.select(str(identifier) if identifier else None)
    return 404, {"error": f"unknown action: {action}"}


def start_ui_server(
    bus: Any,
    config: Dict[str, Any],
    logger: Any,
    stop_event: threading.Event,
    machine: Any,
    sink: Optional[Any] = None,
) -> threading.Thread:
    host = config.get("ui", {}).get("host", "127.0.0.1")
    port = int(config.get("ui", {}).get("port", 8080))
    camera_id = str(config.get("video", {}).get("camera", {}).get("id", "cam0"))
    state = UIState()

    q_telemetry = bus.subscribe("ui.telemetry")
    q_presence = bus.subscribe("vision.presence", max_queue_depth=2)

    def _state_worker() -> None:
        while not stop_event.is_set():
            telemetry = drain_latest(q_telemetry)
            if telemetry is not None:
                state.update_telemetry(telemetry)
            presence = drain_latest(q_presence)
            if presence is not None and presence.get("data") is not None:
                state.update_frame(presence.get("camera_id") or camera_id, presence["data"], presence.get("keypoints", []))
            stop_event.wait(0.03)

    threading.Thread(target=_state_worker, name="ui-state", daemon=True).start()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path == "/":
                self._send(200, live_page(camera_id).encode("utf-8"), "text/html; charset=utf-8")
                return
            if parsed.path.startswith("/frame/"):
                self._send_frame(parsed.path.split("/")[-1].replace(".jpg", ""))
                return
            if parsed.path == "/telemetry":
                self._send_json(200, state.get_telemetry())
                return
            if parsed.path == "/roster":
                self._send_json(200, machine.snapshot())
                return
            if parsed.path == "/export.csv":
                body = export_roster(machine.roster_snapshot()).encode("utf-8")
                self._send(200, body, "text/csv; charset=utf-8", {"Content-Disposition": 'attachment; filename="attendance_list.csv"'})
                return
            if parsed.path == "/report":
                records = sink.read() if sink is not None and hasattr(sink, "read") else []
                self._send_json(200, {"records": records})
                return
            self._send(404, b"", "text/plain")

        def do_POST(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            action = parsed.path.strip("/")
            if action not in ACTIONS:
                self._send(404, b"", "text/plain")
                return
            params: Dict[str, Any] = dict(parse_qs(parsed.query))
            params.update(self._read_json_body())
            code, payload = handle_action(machine, action, params)
            logger.emit("info", "ui.server", "action", {"action": action, "reason": payload.get("reason")})
            self._send_json(code, payload)

        def log_message(self, format: str, *args: Any) -> None:
            return

        def _read_json_body(self) -> Dict[str, Any]:
            length = int(self.headers.get("Content-Length", 0) or 0)
            if length <= 0:
                return {}
            try:
                body = json.loads(self.rfile.read(length).decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return {}
            return body if isinstance(body, dict) else {}

        def _send_frame(self, cam: str) -> None:
            entry = state.get_frame(cam)
            if entry is None:
                self._send(404, b"", "text/plain")
                return
            frame, keypoints = entry
            ok, encoded = cv2.imencode(".jpg", render_frame(frame, keypoints))
            if not ok:
                self._send(500, b"", "text/plain")
                return
            self._send(200, encoded.tobytes(), "image/jpeg")

        def _send_json(self, code: int, payload: Any) -> None:
            self._send(code, json.dumps(payload, default=str).encode("utf-8"), "application/json")

        def _send(self, code: int, body: bytes, content_type: str, headers: Optional[Dict[str, str]] = None) -> None:
            self.send_response(code)
            self.send_header("Content-Type", content_type)
            self.send_header("Cache-Control", "no-store")
            for key, value in (headers or {}).items():
                self.send_header(key, value)
            self.end_headers()
            if body:
                self.wfile.write(body)

    def _serve() -> None:
        try:
            server = ThreadedHTTPServer((host, port), Handler)
        except OSError as exc:
            logger.emit("error", "ui.server", "bind_failed", {"host": host, "port": port, "error": str(exc)})
            return
        server.timeout = 0.5
        logger.emit("info", "ui.server", "started", {"host": host, "port": port})
        while not stop_event.is_set():
            server.handle_request()
        server.server_close()

    thread = threading.Thread(target=_serve, name="ui-server", daemon=True)
    thread.start()
    return thread
