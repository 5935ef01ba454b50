"""
Collaborator ports: the external capabilities the reconciler orchestrates.

pincache never talks to a chain node or a content store itself. A deployment
supplies these through a factory returning ``Collaborators`` (see
``pincache.wiring``).

    EventSource      - registry change events: historical range, live stream, head block
    Registry         - current raw pointer for an entry
    PointerDecoder   - raw pointer -> content hash (or None)
    ValidationProbe  - is the hash a recognised wrapper? valid / invalid / timeout
    ContentStore     - pin / unpin
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

# Raw on-chain pointer value (e.g. contenthash bytes or their hex string)
RawPointer = Any

# on_change(entry, raw_pointer, block_number)
ChangeCallback = Callable[[str, RawPointer, int], None]


class CollaboratorError(Exception):
    """Transient failure in an external collaborator."""


class RegistryFetchError(CollaboratorError):
    """The registry could not return an entry's current pointer."""


class PointerDecodeError(CollaboratorError):
    """A raw pointer could not be decoded."""


class ProbeResult(enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ChangeSet:
    """Entries that changed within a block range, in event order (may repeat).

    ``next_cursor`` is the highest block the source actually covered. A source
    that stops short of the requested end (paging, a lagging node) reports
    where it stopped; None means the whole range was covered.
    """

    entries: tuple[str, ...] = ()
    next_cursor: int | None = None


@dataclass(frozen=True)
class ChangeNotification:
    """One live registry change."""

    entry: str
    raw_pointer: RawPointer
    block_number: int


@runtime_checkable
class EventSource(Protocol):
    def changes_in_range(self, start: int, end: int) -> ChangeSet: ...

    def subscribe(self, on_change: ChangeCallback) -> Callable[[], None] | None:
        """Deliver live changes to ``on_change``. May return an unsubscribe callable."""
        ...

    def latest_block(self) -> int: ...


@runtime_checkable
class Registry(Protocol):
    def current_pointer(self, entry: str) -> RawPointer:
        """Raises RegistryFetchError on transient failure."""
        ...


@runtime_checkable
class PointerDecoder(Protocol):
    def decode(self, raw_pointer: RawPointer) -> str | None:
        """Content hash, or None if the pointer is not content-store addressed."""
        ...


@runtime_checkable
class ValidationProbe(Protocol):
    def classify(self, content_hash: str, timeout: float) -> ProbeResult:
        """Must return TIMEOUT rather than block past ``timeout`` seconds."""
        ...


@runtime_checkable
class ContentStore(Protocol):
    def pin(self, content_hash: str) -> bool: ...

    def unpin(self, content_hash: str) -> bool: ...


@dataclass
class Collaborators:
    event_source: EventSource
    registry: Registry
    decoder: PointerDecoder
    probe: ValidationProbe
    content_store: ContentStore
