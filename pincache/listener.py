"""
LiveListener: background worker that applies live registry changes.

Flow:
    1. EventSource delivers (entry, raw_pointer, block) to our callback
    2. Callback enqueues a ChangeNotification and returns immediately
    3. A single daemon thread drains the queue through CacheRunner.handle_change

One worker means notifications are applied strictly one at a time, in
arrival order. A cache store failure stops the listener; ``wait()``
re-raises it.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from pincache.ports import ChangeNotification, EventSource
from pincache.state import StateStoreError

if TYPE_CHECKING:
    from pincache.runner import CacheRunner

log = logging.getLogger(__name__)

_QUEUE_POLL_SECS = 0.5


class LiveListener:
    """Subscribes to an EventSource and feeds changes to a CacheRunner.

    Usage:
        listener = LiveListener(runner, event_source)
        listener.start()
        # ... later ...
        listener.stop()
    """

    def __init__(self, runner: CacheRunner, event_source: EventSource) -> None:
        self._runner = runner
        self._event_source = event_source
        self._queue: queue.Queue[ChangeNotification] = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self.error: BaseException | None = None
        self.processed = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Subscribe, then start the worker thread.

        Changes delivered before the worker starts wait in the queue. If
        subscribing raises, no thread is started.
        """
        if self.is_running:
            return
        self._stop_event.clear()
        self.error = None
        unsubscribe = self._event_source.subscribe(self._on_change)
        self._unsubscribe = unsubscribe if callable(unsubscribe) else None
        self._thread = threading.Thread(
            target=self._run, name="pincache-listener", daemon=True
        )
        self._thread.start()
        log.info("Listening for events...")

    def stop(self) -> None:
        """Unsubscribe and stop the worker. Queued changes are dropped."""
        self._stop_event.set()
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception:
                log.exception("Unsubscribing from event source failed")
            self._unsubscribe = None
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
            self._thread = None
        log.info("Listener stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the listener stops. Re-raises a fatal worker error.

        Returns True if the listener has stopped.
        """
        stopped = self._stop_event.wait(timeout)
        if self.error is not None:
            raise self.error
        return stopped

    def _on_change(self, entry: str, raw_pointer: Any, block_number: int) -> None:
        if self._stop_event.is_set():
            return
        self._queue.put(ChangeNotification(entry, raw_pointer, int(block_number)))

    def _run(self) -> None:
        """Worker loop: one notification at a time until stopped."""
        while not self._stop_event.is_set():
            try:
                change = self._queue.get(timeout=_QUEUE_POLL_SECS)
            except queue.Empty:
                continue
            try:
                self._runner.handle_change(change)
                self.processed += 1
            except StateStoreError as e:
                log.exception("Cache store failure, stopping listener")
                self.error = e
                self._stop_event.set()
            except Exception:
                log.exception("Failed to process change for %s", change.entry)
            finally:
                self._queue.task_done()

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued notification has been handled.

        Returns False on timeout or if the worker stopped first.
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or self._stop_event.is_set():
                    return False
                self._queue.all_tasks_done.wait(min(remaining, _QUEUE_POLL_SECS))
        return not self._stop_event.is_set()
