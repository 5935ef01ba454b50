"""
CacheRunner: drives the reconciler over registry entries and persists state.

Batch paths (historical catch-up, quarantine replay) and the live listener all
go through the same per-entry step:

    resolve current hash -> reconcile -> save

The whole step runs under one lock, so batch and live work can run side by
side without interleaving decisions. If a save fails, the in-memory state is
rolled back to the last saved snapshot before the error propagates.
report_status() serves the summary published by the last successful save.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from pincache import DEFAULT_PROBE_TIMEOUT_SECS, DEFAULT_START_BLOCK
from pincache.engine import Reconciler, ReconcileOutcome, RunStats, short_id
from pincache.listener import LiveListener
from pincache.ports import ChangeNotification, Collaborators
from pincache.state import CacheState, StateStoreError
from pincache.store import CacheStore

log = logging.getLogger(__name__)


class CacheRunner:
    """Operational entry points over one CacheState.

    Usage:
        runner = CacheRunner(CacheStore(), collaborators)
        runner.run_from_last_cursor()
        listener = runner.start_live_listening()
    """

    def __init__(
        self,
        store: CacheStore,
        collaborators: Collaborators,
        state: CacheState | None = None,
        start_block: int = DEFAULT_START_BLOCK,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECS,
    ) -> None:
        self.store = store
        self.deps = collaborators
        self.start_block = start_block
        # load() raises CorruptStateError; never fall back to an empty state
        self.state = state if state is not None else store.load(start_block)
        self.reconciler = Reconciler(
            collaborators.probe, collaborators.content_store, probe_timeout
        )
        self._lock = threading.RLock()
        # Summary as of the last successful save, read without the lock
        self._status = self.state.summary()

    # -- persistence -------------------------------------------------------

    def _commit(self, snapshot: CacheState) -> None:
        """Save the state; on failure restore ``snapshot`` and re-raise."""
        try:
            self.store.save(self.state)
        except StateStoreError:
            self.state.restore(snapshot)
            log.error("Saving cache state failed, in-memory changes rolled back")
            raise
        self._status = self.state.summary()

    # -- per-entry step ----------------------------------------------------

    def _resolve(self, entry: str) -> str | None:
        raw_pointer = self.deps.registry.current_pointer(entry)
        return self.deps.decoder.decode(raw_pointer)

    def process_entry(self, entry: str, *, release_quarantine: bool = False) -> ReconcileOutcome:
        """Resolve, reconcile and persist a single entry."""
        with self._lock:
            snapshot = self.state.copy()
            if release_quarantine:
                self.state.quarantined.discard(entry)
            try:
                content_hash = self._resolve(entry)
            except Exception:
                log.warning("Error retrieving contenthash for %s", short_id(entry), exc_info=True)
                self.state.quarantine(entry)
                log.info(
                    "Quarantined %s (%d quarantined)",
                    short_id(entry), len(self.state.quarantined),
                )
                outcome = ReconcileOutcome.QUARANTINED
            else:
                outcome = self.reconciler.reconcile(self.state, entry, content_hash)
            self._commit(snapshot)
            return outcome

    def process_entries(
        self, entries: Iterable[str], *, release_quarantine: bool = False
    ) -> RunStats:
        """Reconcile each distinct entry in order, saving after every one.

        A failing entry never aborts the run; only StateStoreError propagates.
        """
        unique = list(dict.fromkeys(entries))
        stats = RunStats()
        log.info("Found %d eligible entries", len(unique))

        for i, entry in enumerate(unique, 1):
            log.info("Processing %s (%d/%d)", short_id(entry), i, len(unique))
            outcome = self.process_entry(entry, release_quarantine=release_quarantine)
            stats.record(outcome)
            log.debug("%s -> %s", short_id(entry), outcome.value)

        if unique:
            log.info("Finished processing %d entries: %s", len(unique), stats)
            summary = self.report_status()
            log.info(
                "%d pinned hashes, %d quarantined entries",
                summary["pinned_hashes"], summary["quarantined_count"],
            )
        return stats

    # -- batch operations --------------------------------------------------

    def catch_up(self, range_start: int, range_end: int) -> RunStats:
        """Reconcile every entry that changed in [range_start, range_end].

        The cursor moves to ``range_end``, or to the ChangeSet's ``next_cursor`` if
        the source stopped short, only after all entries are saved.
        """
        with self._lock:
            cursor = self.state.last_block_number
        if range_end <= cursor:
            log.info("Already caught up to block %d (cursor %d)", range_end, cursor)
            return RunStats()

        log.info("Processing blocks %d..%d", range_start, range_end)
        changes = self.deps.event_source.changes_in_range(range_start, range_end)
        stats = self.process_entries(changes.entries)

        covered = range_end
        if changes.next_cursor is not None and changes.next_cursor < range_end:
            covered = changes.next_cursor
            log.warning("Event source stopped at block %d of %d", covered, range_end)
        with self._lock:
            snapshot = self.state.copy()
            self.state.advance_cursor(covered)
            self._commit(snapshot)
        log.info("Cursor advanced to block %d", self.state.last_block_number)
        return stats

    def reprocess_quarantine(self) -> RunStats:
        """Give every quarantined entry another pass through the engine.

        Entries that still time out or fail to pin are quarantined again.
        """
        with self._lock:
            candidates = sorted(self.state.quarantined)
        log.info("Processing %d quarantined entries", len(candidates))
        return self.process_entries(candidates, release_quarantine=True)

    # -- live --------------------------------------------------------------

    def handle_change(self, change: ChangeNotification) -> ReconcileOutcome:
        """Reconcile one live notification and move the cursor to block - 1."""
        name = short_id(change.entry)
        with self._lock:
            snapshot = self.state.copy()
            try:
                content_hash = self.deps.decoder.decode(change.raw_pointer)
            except Exception:
                log.warning("Cannot decode pointer for %s", name, exc_info=True)
                self.state.quarantine(change.entry)
                outcome = ReconcileOutcome.QUARANTINED
            else:
                outcome = self.reconciler.reconcile(self.state, change.entry, content_hash)
            # The event's own block stays inside the next catch-up range
            self.state.advance_cursor(change.block_number - 1)
            self._commit(snapshot)

        log.info("Block %d: %s %s", change.block_number, name, outcome.value)
        return outcome

    def start_live_listening(self) -> LiveListener:
        listener = LiveListener(self, self.deps.event_source)
        listener.start()
        return listener

    # -- operational entry points -----------------------------------------

    def run_catch_up(self, block_count: int) -> RunStats:
        """Catch up over the last ``block_count`` blocks. 0 does nothing."""
        if block_count < 0:
            raise ValueError(f"block_count must be >= 0, got {block_count}")
        if block_count == 0:
            return RunStats()
        latest = self.deps.event_source.latest_block()
        log.info("Processing past %d blocks (head %d)", block_count, latest)
        return self.catch_up(max(latest - block_count, 0), latest)

    def run_from_last_cursor(self) -> RunStats:
        """Catch up on blocks missed since the stored cursor."""
        latest = self.deps.event_source.latest_block()
        with self._lock:
            start = self.state.last_block_number + 1
        log.info("Processing missed blocks %d..%d", start, latest)
        return self.catch_up(start, latest)

    def report_status(self) -> dict[str, int]:
        """Counts as of the last successful save. Does not take the state lock."""
        return dict(self._status)

    def reset_state(self) -> None:
        """Delete the stored state and start over from the start block."""
        with self._lock:
            self.store.reset()
            self.state.restore(CacheState.empty(self.start_block))
            self._status = self.state.summary()
        log.info("Cache state reset to block %d", self.start_block)
