"""
CacheStore: durable storage for the reconciliation CacheState.

Storage layout:
    ~/.pincache/storage.json   - cursor, entry<->hash maps, quarantine set

All writes are atomic (temp file + os.replace) for crash safety. A corrupt
file is never treated as empty: losing the maps would re-pin released
content or forget what to unpin.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pincache import DEFAULT_START_BLOCK, DEFAULT_STATE_FILE
from pincache.state import CacheState, CorruptStateError, StateStoreError

log = logging.getLogger(__name__)

_TMP_PREFIX = ".storage_"
_TMP_SUFFIX = ".tmp"


class CacheStore:
    """File-based store for a single CacheState.

    Usage:
        store = CacheStore()
        state = store.load(default_start_block=17_000_000)
        ...
        store.save(state)
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else DEFAULT_STATE_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self, default_start_block: int = DEFAULT_START_BLOCK) -> CacheState:
        """Read the stored state, or a fresh one if nothing is stored.

        Raises CorruptStateError if the file cannot be parsed and
        StateStoreError if it cannot be read.
        """
        if not self.path.is_file():
            log.info("No cache state at %s, starting at block %d", self.path, default_start_block)
            return CacheState.empty(default_start_block)

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Cannot read cache state {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"Cache state {self.path} is not valid JSON: {e}") from e

        state = CacheState.from_dict(data)
        log.debug(
            "Loaded cache state: block %d, %d pinned, %d quarantined",
            state.last_block_number, len(state.entry_to_hash), len(state.quarantined),
        )
        return state

    def save(self, state: CacheState) -> None:
        """Atomically write the full state (temp + fsync + rename)."""
        data = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(directory), suffix=_TMP_SUFFIX, prefix=_TMP_PREFIX
            )
        except OSError as e:
            raise StateStoreError(f"Cannot write cache state {self.path}: {e}") from e

        try:
            os.write(fd, data.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            fd = -1
            os.replace(tmp_path, str(self.path))
        except OSError as e:
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StateStoreError(f"Cannot write cache state {self.path}: {e}") from e

    def reset(self) -> None:
        """Discard all stored state irrecoverably."""
        try:
            if self.path.is_file():
                self.path.unlink()
                log.info("Deleted cache state %s", self.path)
            if self.path.parent.is_dir():
                for stray in self.path.parent.glob(f"{_TMP_PREFIX}*{_TMP_SUFFIX}"):
                    stray.unlink()
        except OSError as e:
            raise StateStoreError(f"Cannot delete cache state {self.path}: {e}") from e
