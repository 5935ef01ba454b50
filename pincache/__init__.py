"""
pincache: keep a content store's pinned set in sync with registry pointers.

Architecture:
    Registry (chain):  entry -> contenthash pointer, change events per block
    Cache (local):     ~/.pincache/storage.json (cursor, entry<->hash maps, quarantine)
    Content store:     pin / unpin of validated content hashes
"""

from pathlib import Path

__version__ = "0.1.0"

# Local state
DEFAULT_HOME = Path.home() / ".pincache"
DEFAULT_STATE_FILE = DEFAULT_HOME / "storage.json"
DEFAULT_CONFIG_FILE = DEFAULT_HOME / "config.toml"
DEFAULT_API_KEY_FILE = DEFAULT_HOME / "api_key"
STATE_FORMAT_VERSION = 2

# Reconciliation defaults
DEFAULT_START_BLOCK = 0
DEFAULT_PROBE_TIMEOUT_SECS = 15.0

# Status API defaults
API_DEFAULT_HOST = "127.0.0.1"
API_DEFAULT_PORT = 8080
API_MAX_BODY_BYTES = 64 * 1024
