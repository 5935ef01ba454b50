"""
Request handlers for the status API.

Each handler returns ``(status_code, json_dict)`` and never touches the
HTTP layer, so they are testable without a server.
"""

from __future__ import annotations

import logging
from typing import Any

from pincache.state import PinCacheError

logger = logging.getLogger(__name__)


def handle_status(runner: Any, listener: Any = None) -> tuple[int, dict]:
    """GET /status: cursor, pinned and quarantined counts."""
    result: dict[str, Any] = {"service": "pincache", "healthy": True}
    result.update(runner.report_status())

    if listener is not None:
        result["listener"] = {
            "running": listener.is_running,
            "processed": listener.processed,
            "pending": listener.pending,
        }
        if not listener.is_running:
            result["healthy"] = False
        if listener.error is not None:
            result["listener"]["error"] = str(listener.error)

    return 200, result


def handle_reprocess_quarantine(runner: Any) -> tuple[int, dict]:
    """POST /quarantine/reprocess: run quarantined entries through the engine again."""
    try:
        stats = runner.reprocess_quarantine()
    except PinCacheError as e:
        logger.exception("Quarantine reprocessing failed")
        return 500, {"error": f"Reprocessing failed: {e}"}

    return 200, {"stats": stats.to_dict(), "status": runner.report_status()}
