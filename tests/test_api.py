"""
Tests for the status API: auth, handlers, server integration.

Handlers run against a real CacheRunner with mocked collaborators; the
integration tests start a real HTTP server on a random localhost port.
"""

from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from unittest.mock import MagicMock, patch

import pytest

from pincache.api.handlers import handle_reprocess_quarantine, handle_status
from pincache.api.server import StatusAPIServer, load_api_key
from pincache.ports import ProbeResult
from pincache.runner import CacheRunner
from pincache.state import StateStoreError
from pincache.store import CacheStore

E1, E2 = "0x" + "11" * 32, "0x" + "22" * 32


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def deps():
    deps = MagicMock()
    deps.registry.current_pointer.side_effect = {E1: "QmOne", E2: "QmTwo"}.get
    deps.decoder.decode.side_effect = lambda raw: raw
    deps.probe.classify.return_value = ProbeResult.VALID
    deps.content_store.pin.return_value = True
    return deps


@pytest.fixture
def runner(tmp_path, deps):
    return CacheRunner(CacheStore(tmp_path / "storage.json"), deps, start_block=10)


@pytest.fixture
def quarantined_runner(runner, deps):
    """Runner with E1 and E2 quarantined by a probe timeout."""
    deps.probe.classify.return_value = ProbeResult.TIMEOUT
    runner.process_entries([E1, E2])
    deps.probe.classify.return_value = ProbeResult.VALID
    return runner


# ---------------------------------------------------------------------------
# TestAuth
# ---------------------------------------------------------------------------

class TestAuth:

    @pytest.fixture
    def make_server(self, runner):
        servers = []

        def _make(api_key):
            server = StatusAPIServer(("127.0.0.1", 0), runner, api_key)
            servers.append(server)
            return server

        yield _make
        for server in servers:
            server.server_close()

    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer secret", True),
            ("Bearer  secret ", True),
            ("Bearer nope", False),
            ("secret", False),
            ("", False),
            ("Bearer ", False),
            ("Basic c2VjcmV0", False),
        ],
    )
    def test_bearer_check(self, make_server, header, expected):
        assert make_server("secret").authorized(header) is expected

    def test_empty_api_key_denies_all(self, make_server):
        server = make_server("")
        assert not server.authorized("Bearer ")
        assert not server.authorized("Bearer anything")

    def test_load_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("PINCACHE_API_KEY", "  envkey ")
        assert load_api_key() == "envkey"

    def test_load_api_key_from_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PINCACHE_API_KEY", raising=False)
        key_file = tmp_path / "api_key"
        key_file.write_text("filekey\n")
        assert load_api_key(key_file) == "filekey"

    def test_load_api_key_empty(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PINCACHE_API_KEY", raising=False)
        assert load_api_key(tmp_path / "missing") == ""

    def test_unreadable_key_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PINCACHE_API_KEY", raising=False)
        assert load_api_key(tmp_path) == ""


# ---------------------------------------------------------------------------
# TestHandlers
# ---------------------------------------------------------------------------

class TestHandleStatus:

    def test_counts(self, quarantined_runner):
        code, data = handle_status(quarantined_runner)
        assert code == 200
        assert data["healthy"] is True
        assert data["cursor"] == 10
        assert data["pinned_count"] == 0
        assert data["quarantined_count"] == 2
        assert "listener" not in data

    def test_stopped_listener_unhealthy(self, runner):
        listener = MagicMock(is_running=False, processed=4, pending=0, error=StateStoreError("x"))
        code, data = handle_status(runner, listener)
        assert code == 200
        assert data["healthy"] is False
        assert data["listener"]["processed"] == 4
        assert data["listener"]["error"] == "x"


class TestHandleReprocess:

    def test_reprocess(self, quarantined_runner):
        code, data = handle_reprocess_quarantine(quarantined_runner)
        assert code == 200
        assert data["stats"]["pinned"] == 2
        assert data["status"]["quarantined_count"] == 0

    def test_store_failure(self, quarantined_runner):
        with patch.object(
            quarantined_runner.store, "save", side_effect=StateStoreError("disk full")
        ):
            code, data = handle_reprocess_quarantine(quarantined_runner)
        assert code == 500
        assert "disk full" in data["error"]
        assert quarantined_runner.state.quarantined == {E1, E2}


# ---------------------------------------------------------------------------
# TestServerIntegration
# ---------------------------------------------------------------------------

class TestServerIntegration:
    """Integration tests using a real HTTP server on localhost."""

    @pytest.fixture
    def api_server(self, quarantined_runner):
        """Start a real API server on a random port."""
        # Use port 0 to let OS pick an available port
        server = StatusAPIServer(("127.0.0.1", 0), quarantined_runner, "testkey123")
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        yield server
        server.shutdown()
        server.server_close()

    def _url(self, server, path):
        host, port = server.server_address[:2]
        return f"http://{host}:{port}{path}"

    def _request(self, server, path, method="GET", headers=None):
        req = urllib.request.Request(
            self._url(server, path), data=b"" if method == "POST" else None, method=method
        )
        for k, v in (headers or {}).items():
            req.add_header(k, v)
        try:
            with urllib.request.urlopen(req, timeout=5) as resp:
                return resp.status, json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            return e.code, json.loads(e.read().decode())

    def test_status_endpoint(self, api_server):
        code, data = self._request(api_server, "/status")
        assert code == 200
        assert data["service"] == "pincache"
        assert data["quarantined_count"] == 2

    def test_status_ignores_query_string(self, api_server):
        code, _ = self._request(api_server, "/status?verbose=1")
        assert code == 200

    def test_reprocess_no_auth(self, api_server):
        code, data = self._request(api_server, "/quarantine/reprocess", method="POST")
        assert code == 401
        assert api_server.runner.state.quarantined == {E1, E2}

    def test_reprocess_wrong_key(self, api_server):
        code, _ = self._request(
            api_server, "/quarantine/reprocess", method="POST",
            headers={"Authorization": "Bearer wrong"},
        )
        assert code == 401

    def test_reprocess_with_auth(self, api_server):
        code, data = self._request(
            api_server, "/quarantine/reprocess", method="POST",
            headers={"Authorization": "Bearer testkey123"},
        )
        assert code == 200
        assert data["stats"]["pinned"] == 2

        code, status = self._request(api_server, "/status")
        assert status["pinned_count"] == 2
        assert status["quarantined_count"] == 0

    def test_404_on_unknown_get(self, api_server):
        code, data = self._request(api_server, "/nonexistent")
        assert code == 404

    def test_404_on_unknown_post(self, api_server):
        code, _ = self._request(
            api_server, "/status", method="POST",
            headers={"Authorization": "Bearer testkey123"},
        )
        assert code == 404
