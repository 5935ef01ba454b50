"""
CacheState: the durable reconciliation aggregate.

Holds the block cursor, the bidirectional entry<->hash ownership maps, the
quarantine set and the hashes still waiting to be unpinned. The engine
mutates it in place; CacheStore persists it.

A hash leaves an entry's ownership in one of two ways:

    release(entry)   the unpin already succeeded, the hash is forgotten
    retire(entry)    the hash may still be pinned, it moves to pending_unpin

pending_unpin maps hash -> the entry that last owned it, so a later
reconcile of that entry can finish the unpin.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pincache import STATE_FORMAT_VERSION


class PinCacheError(Exception):
    """Base class for pincache errors."""


class StateStoreError(PinCacheError):
    """Cache store I/O failure. Fatal for the current run."""


class CorruptStateError(StateStoreError):
    """Persisted state cannot be parsed or is internally inconsistent."""


class StateInvariantError(PinCacheError):
    """In-memory state broke the entry<->hash or quarantine invariants."""


@dataclass
class CacheState:
    """Reconciliation state for one registry/content-store pair."""

    last_block_number: int = 0
    entry_to_hash: dict[str, str] = field(default_factory=dict)
    hash_to_entry: dict[str, str] = field(default_factory=dict)
    quarantined: set[str] = field(default_factory=set)
    pending_unpin: dict[str, str] = field(default_factory=dict)

    @classmethod
    def empty(cls, start_block: int = 0) -> CacheState:
        return cls(last_block_number=start_block)

    def copy(self) -> CacheState:
        """Independent copy, used as a rollback snapshot."""
        return CacheState(
            last_block_number=self.last_block_number,
            entry_to_hash=dict(self.entry_to_hash),
            hash_to_entry=dict(self.hash_to_entry),
            quarantined=set(self.quarantined),
            pending_unpin=dict(self.pending_unpin),
        )

    def restore(self, snapshot: CacheState) -> None:
        """Replace this state's contents with ``snapshot``'s, in place."""
        self.last_block_number = snapshot.last_block_number
        self.entry_to_hash = dict(snapshot.entry_to_hash)
        self.hash_to_entry = dict(snapshot.hash_to_entry)
        self.quarantined = set(snapshot.quarantined)
        self.pending_unpin = dict(snapshot.pending_unpin)

    # -- ownership ---------------------------------------------------------

    def owner_of(self, content_hash: str) -> str | None:
        return self.hash_to_entry.get(content_hash)

    def hash_of(self, entry: str) -> str | None:
        return self.entry_to_hash.get(entry)

    def assign(self, entry: str, content_hash: str) -> None:
        """Record ``entry`` as the owner of ``content_hash``.

        A different hash the entry owned before is retired to pending_unpin.
        """
        previous = self.entry_to_hash.get(entry)
        if previous is not None and previous != content_hash:
            self.hash_to_entry.pop(previous, None)
            self.pending_unpin[previous] = entry
        self.pending_unpin.pop(content_hash, None)
        self.entry_to_hash[entry] = content_hash
        self.hash_to_entry[content_hash] = entry

    def release(self, entry: str) -> str | None:
        """Drop the entry's ownership. Returns the hash it owned, if any."""
        content_hash = self.entry_to_hash.pop(entry, None)
        if content_hash is not None and self.hash_to_entry.get(content_hash) == entry:
            del self.hash_to_entry[content_hash]
        return content_hash

    def retire(self, entry: str) -> str | None:
        """Drop the entry's ownership but keep its hash for a later unpin."""
        content_hash = self.release(entry)
        if content_hash is not None:
            self.pending_unpin[content_hash] = entry
        return content_hash

    def pending_for(self, entry: str) -> list[str]:
        """Hashes last owned by ``entry`` that are still waiting for an unpin."""
        return sorted(h for h, e in self.pending_unpin.items() if e == entry)

    def unpinned(self, content_hash: str) -> None:
        self.pending_unpin.pop(content_hash, None)

    def quarantine(self, entry: str) -> None:
        """Freeze ``entry`` out of processing. A quarantined entry owns nothing."""
        self.retire(entry)
        self.quarantined.add(entry)

    def advance_cursor(self, block_number: int) -> None:
        """Move the cursor forward. Never moves it backward."""
        if block_number > self.last_block_number:
            self.last_block_number = block_number

    # -- checks / reporting ------------------------------------------------

    def check_invariants(self) -> None:
        """Raise StateInvariantError if the maps or quarantine disagree."""
        if len(self.entry_to_hash) != len(self.hash_to_entry):
            raise StateInvariantError(
                f"map sizes differ: {len(self.entry_to_hash)} entries, "
                f"{len(self.hash_to_entry)} hashes"
            )
        for entry, content_hash in self.entry_to_hash.items():
            if self.hash_to_entry.get(content_hash) != entry:
                raise StateInvariantError(
                    f"hash {content_hash!r} not owned by entry {entry!r}"
                )
        overlap = self.quarantined.intersection(self.entry_to_hash)
        if overlap:
            raise StateInvariantError(
                f"{len(overlap)} quarantined entries still own a hash"
            )
        owned_and_pending = set(self.pending_unpin).intersection(self.hash_to_entry)
        if owned_and_pending:
            raise StateInvariantError(
                f"{len(owned_and_pending)} owned hashes also pending unpin"
            )

    def summary(self) -> dict[str, int]:
        return {
            "cursor": self.last_block_number,
            "pinned_count": len(self.entry_to_hash),
            "pinned_hashes": len(self.hash_to_entry),
            "quarantined_count": len(self.quarantined),
            "pending_unpin_count": len(self.pending_unpin),
        }

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": STATE_FORMAT_VERSION,
            "last_block_number": self.last_block_number,
            "entry_to_hash": dict(self.entry_to_hash),
            "hash_to_entry": dict(self.hash_to_entry),
            "quarantined": sorted(self.quarantined),
            "pending_unpin": dict(self.pending_unpin),
        }

    @classmethod
    def from_dict(cls, data: Any) -> CacheState:
        """Build a state from its serialized form.

        Strict: any missing or mistyped field raises CorruptStateError.
        Format 1 files predate pending_unpin and load with it empty.
        """
        if not isinstance(data, dict):
            raise CorruptStateError("state root must be a JSON object")

        version = data.get("format")
        if version not in (1, STATE_FORMAT_VERSION):
            raise CorruptStateError(f"unsupported state format: {version!r}")

        cursor = data.get("last_block_number")
        if not isinstance(cursor, int) or isinstance(cursor, bool) or cursor < 0:
            raise CorruptStateError(f"invalid last_block_number: {cursor!r}")

        entry_to_hash = _str_mapping(data.get("entry_to_hash"), "entry_to_hash")
        hash_to_entry = _str_mapping(data.get("hash_to_entry"), "hash_to_entry")
        if version == 1:
            pending_unpin: dict[str, str] = {}
        else:
            pending_unpin = _str_mapping(data.get("pending_unpin"), "pending_unpin")

        quarantined = data.get("quarantined")
        if not isinstance(quarantined, list) or not all(
            isinstance(e, str) for e in quarantined
        ):
            raise CorruptStateError("quarantined must be a list of strings")

        state = cls(
            last_block_number=cursor,
            entry_to_hash=entry_to_hash,
            hash_to_entry=hash_to_entry,
            quarantined=set(quarantined),
            pending_unpin=pending_unpin,
        )
        try:
            state.check_invariants()
        except StateInvariantError as e:
            raise CorruptStateError(f"inconsistent state: {e}") from e
        return state


def _str_mapping(value: Any, name: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise CorruptStateError(f"{name} must be a JSON object")
    for k, v in value.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise CorruptStateError(f"{name} must map strings to strings")
    return dict(value)
