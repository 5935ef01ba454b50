"""
pincache status API: read-only status plus an authenticated quarantine replay.

Zero external dependencies, stdlib only.
"""

from pincache.api.server import run_api

__all__ = ["run_api"]
