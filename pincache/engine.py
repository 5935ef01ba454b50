"""
Reconciliation engine: decides pin / unpin / skip / quarantine for one entry.

Decision table for reconcile(state, entry, resolved_hash), first match wins:

    1. resolved_hash is None      -> unpin the owned hash (if any)
                                     success: drop mappings   -> UNPINNED
                                     failure: keep mappings   -> NO_CHANGE
    2. entry is quarantined       -> NO_CHANGE (frozen until reprocessed)
    3. hash already has an owner  -> NO_CHANGE (first claimant wins)
    4. new hash                   -> probe
                                     invalid                  -> SKIPPED_NOT_WRAPPER
                                     timeout                  -> QUARANTINED
                                     valid, pin fails         -> QUARANTINED
                                     valid, pin ok            -> PINNED

Hashes an entry stopped owning without a successful unpin sit in
state.pending_unpin. Whenever the entry is reconciled again and its current
hash is known, every other pending hash of that entry is unpinned. A failed
unpin leaves the hash pending for the next attempt.

The state is passed in explicitly and mutated in place. Callers serialize
calls and persist the state afterwards.
"""

from __future__ import annotations

import enum
import logging

from pincache import DEFAULT_PROBE_TIMEOUT_SECS
from pincache.ports import ContentStore, ProbeResult, ValidationProbe
from pincache.state import CacheState

log = logging.getLogger(__name__)


class ReconcileOutcome(enum.Enum):
    PINNED = "pinned"
    UNPINNED = "unpinned"
    NO_CHANGE = "no_change"
    SKIPPED_NOT_WRAPPER = "skipped_not_wrapper"
    QUARANTINED = "quarantined"


def short_id(value: str, head: int = 6, tail: int = 4) -> str:
    """Shorten a long hex id / hash for log lines."""
    if len(value) <= head + tail + 3:
        return value
    return f"{value[:head]}...{value[-tail:]}"


class RunStats:
    """Outcome counters for a batch run."""

    def __init__(self) -> None:
        self.counts: dict[ReconcileOutcome, int] = {o: 0 for o in ReconcileOutcome}

    def record(self, outcome: ReconcileOutcome) -> None:
        self.counts[outcome] += 1

    @property
    def processed(self) -> int:
        return sum(self.counts.values())

    def __getitem__(self, outcome: ReconcileOutcome) -> int:
        return self.counts[outcome]

    def to_dict(self) -> dict[str, int]:
        result = {o.value: n for o, n in self.counts.items()}
        result["processed"] = self.processed
        return result

    def __str__(self) -> str:
        return (
            f"{self.processed} processed: "
            f"{self.counts[ReconcileOutcome.PINNED]} pinned, "
            f"{self.counts[ReconcileOutcome.UNPINNED]} unpinned, "
            f"{self.counts[ReconcileOutcome.NO_CHANGE]} unchanged, "
            f"{self.counts[ReconcileOutcome.SKIPPED_NOT_WRAPPER]} not wrappers, "
            f"{self.counts[ReconcileOutcome.QUARANTINED]} quarantined"
        )


class Reconciler:
    """Applies the decision table against a probe and a content store.

    Usage:
        reconciler = Reconciler(probe, content_store, probe_timeout=15.0)
        outcome = reconciler.reconcile(state, entry, content_hash)
    """

    def __init__(
        self,
        probe: ValidationProbe,
        content_store: ContentStore,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECS,
    ) -> None:
        self._probe = probe
        self._content_store = content_store
        self.probe_timeout = probe_timeout

    def reconcile(
        self, state: CacheState, entry: str, resolved_hash: str | None
    ) -> ReconcileOutcome:
        name = short_id(entry)

        if resolved_hash is None:
            return self._handle_disappeared(state, entry, name)

        if entry in state.quarantined:
            log.info(
                "%s already quarantined (%d quarantined), skipping",
                name, len(state.quarantined),
            )
            return ReconcileOutcome.NO_CHANGE

        owner = state.owner_of(resolved_hash)
        if owner is not None:
            if owner == entry:
                log.info("%s is already pinned", resolved_hash)
                self._release_pending(state, entry, keep=resolved_hash)
            else:
                log.info(
                    "%s is already pinned for %s, not reassigning to %s",
                    resolved_hash, short_id(owner), name,
                )
            return ReconcileOutcome.NO_CHANGE

        log.info("Checking if %s is a wrapper", resolved_hash)
        result = self._classify(resolved_hash)

        if result is ProbeResult.INVALID:
            log.info("%s is not a valid wrapper", resolved_hash)
            return ReconcileOutcome.SKIPPED_NOT_WRAPPER

        if result is ProbeResult.TIMEOUT:
            self._quarantine(state, entry, resolved_hash)
            log.info(
                "Probe timed out, quarantined %s (%d quarantined)",
                name, len(state.quarantined),
            )
            return ReconcileOutcome.QUARANTINED

        if not self._call_store("pin", resolved_hash):
            self._quarantine(state, entry, resolved_hash)
            log.info(
                "Pinning %s failed, quarantined %s (%d quarantined)",
                resolved_hash, name, len(state.quarantined),
            )
            return ReconcileOutcome.QUARANTINED

        state.assign(entry, resolved_hash)
        log.info("Pinned %s for %s", resolved_hash, name)
        self._release_pending(state, entry, keep=resolved_hash)
        return ReconcileOutcome.PINNED

    def _quarantine(self, state: CacheState, entry: str, resolved_hash: str) -> None:
        # The pointer moved to resolved_hash, so older hashes can go now
        state.quarantine(entry)
        self._release_pending(state, entry, keep=resolved_hash)

    def _handle_disappeared(
        self, state: CacheState, entry: str, name: str
    ) -> ReconcileOutcome:
        released = self._release_pending(state, entry)
        saved = state.hash_of(entry)
        if saved is None:
            if released:
                return ReconcileOutcome.UNPINNED
            log.info("%s has no content hash, nothing changed", name)
            return ReconcileOutcome.NO_CHANGE

        log.info("%s no longer points to a content hash, unpinning %s", name, saved)
        if not self._call_store("unpin", saved):
            log.info("Unpinning %s failed, will retry on a later run", saved)
            return ReconcileOutcome.UNPINNED if released else ReconcileOutcome.NO_CHANGE

        state.release(entry)
        log.info("Unpinned %s", saved)
        return ReconcileOutcome.UNPINNED

    def _release_pending(
        self, state: CacheState, entry: str, keep: str | None = None
    ) -> int:
        """Unpin the entry's pending hashes other than ``keep``. Returns the count."""
        released = 0
        for content_hash in state.pending_for(entry):
            if content_hash == keep:
                continue
            if self._call_store("unpin", content_hash):
                state.unpinned(content_hash)
                log.info("Released previous hash %s of %s", content_hash, short_id(entry))
                released += 1
            else:
                log.warning(
                    "Could not unpin previous hash %s of %s, will retry",
                    content_hash, short_id(entry),
                )
        return released

    def _classify(self, content_hash: str) -> ProbeResult:
        try:
            # Probes may answer with the plain "valid"/"invalid"/"timeout" strings
            return ProbeResult(self._probe.classify(content_hash, self.probe_timeout))
        except Exception:
            log.warning("Probe for %s failed, treating as timeout", content_hash, exc_info=True)
            return ProbeResult.TIMEOUT

    def _call_store(self, op: str, content_hash: str) -> bool:
        try:
            return bool(getattr(self._content_store, op)(content_hash))
        except Exception:
            log.warning("%s of %s raised", op, content_hash, exc_info=True)
            return False
