"""
HTTP server for the status API.

Uses stdlib http.server. Routes requests to handler functions in handlers.py.

POST routes need "Authorization: Bearer <key>". The key comes from
PINCACHE_API_KEY or ~/.pincache/api_key; with neither set, POST is refused.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any

from pincache import (
    API_DEFAULT_HOST,
    API_DEFAULT_PORT,
    API_MAX_BODY_BYTES,
    DEFAULT_API_KEY_FILE,
)
from pincache.api.handlers import handle_reprocess_quarantine, handle_status

logger = logging.getLogger(__name__)


class StatusAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the status API.

    Server-level dependencies (runner, listener, api_key) are attached
    to the server instance and accessed via self.server.
    """

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(format, *args)

    def _send_json(self, status: int, data: dict) -> None:
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _drain_body(self) -> None:
        length = int(self.headers.get("Content-Length", 0) or 0)
        if 0 < length <= API_MAX_BODY_BYTES:
            self.rfile.read(length)

    def _require_auth(self) -> bool:
        """Check Bearer auth. Returns True if authorized, sends 401 if not."""
        auth_header = self.headers.get("Authorization", "")
        if not self.server.authorized(auth_header):  # type: ignore[attr-defined]
            self._send_json(401, {"error": "Unauthorized, provide Authorization: Bearer <key>"})
            return False
        return True

    def do_GET(self) -> None:
        path = self.path.split("?")[0]
        server = self.server  # type: ignore[attr-defined]

        if path == "/status":
            code, data = handle_status(server.runner, server.listener)
            self._send_json(code, data)
            return

        self._send_json(404, {"error": "Not found"})

    def do_POST(self) -> None:
        path = self.path.split("?")[0]
        server = self.server  # type: ignore[attr-defined]

        # Always read the body first to avoid connection resets
        self._drain_body()

        if path == "/quarantine/reprocess":
            if not self._require_auth():
                return
            code, data = handle_reprocess_quarantine(server.runner)
            self._send_json(code, data)
            return

        self._send_json(404, {"error": "Not found"})


class StatusAPIServer(HTTPServer):
    """HTTPServer subclass that carries API dependencies."""

    def __init__(
        self,
        address: tuple[str, int],
        runner: Any,
        api_key: str,
        listener: Any = None,
    ) -> None:
        super().__init__(address, StatusAPIHandler)
        self.runner = runner
        self.api_key = api_key
        self.listener = listener

    def authorized(self, auth_header: str) -> bool:
        """Constant-time Bearer check. An empty api_key denies every request."""
        scheme, _, token = auth_header.partition(" ")
        token = token.strip()
        if not self.api_key or scheme != "Bearer" or not token:
            return False
        return hmac.compare_digest(token.encode(), self.api_key.encode())


def load_api_key(key_file: str | Path = DEFAULT_API_KEY_FILE) -> str:
    """PINCACHE_API_KEY, else the key file. Empty string when neither is set."""
    key = os.environ.get("PINCACHE_API_KEY", "").strip()
    if key:
        return key
    try:
        return Path(key_file).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return ""
    except OSError as e:
        logger.warning("Cannot read API key file %s: %s", key_file, e)
        return ""


def run_api(
    runner: Any,
    host: str = API_DEFAULT_HOST,
    port: int = API_DEFAULT_PORT,
    listen: bool = False,
) -> None:
    """Start the status API server (blocking).

    Args:
        runner: CacheRunner instance
        host: Bind address (default 127.0.0.1)
        port: Listen port (default 8080)
        listen: Also run the live listener in the background
    """
    api_key = load_api_key()
    if not api_key:
        print(
            "WARNING: No API key configured. POST endpoints will reject all requests.\n"
            "Set PINCACHE_API_KEY env var or create ~/.pincache/api_key",
            file=sys.stderr,
        )

    listener = runner.start_live_listening() if listen else None
    server = StatusAPIServer((host, port), runner, api_key, listener)

    print(f"pincache API listening on http://{host}:{port}")
    print(f"  GET  /status               cursor, pinned and quarantined counts")
    print(f"  POST /quarantine/reprocess reprocess quarantined entries (auth required)")
    if listener is not None:
        print(f"  live listener running")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        if listener is not None:
            listener.stop()
        server.server_close()
