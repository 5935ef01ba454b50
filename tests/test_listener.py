"""
Tests for LiveListener: subscription, serial processing, shutdown, fatal errors.

The event source is a small in-test stub that hands us its callback.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from pincache.engine import ReconcileOutcome
from pincache.listener import LiveListener
from pincache.ports import ChangeNotification, ProbeResult
from pincache.runner import CacheRunner
from pincache.state import StateStoreError
from pincache.store import CacheStore

E1, E2 = "0x" + "11" * 32, "0x" + "22" * 32


class StubEventSource:
    """Captures the on_change callback so tests can fire events."""

    def __init__(self) -> None:
        self.on_change = None
        self.unsubscribed = False

    def changes_in_range(self, start, end):
        raise AssertionError("not used by the listener")

    def latest_block(self):
        return 0

    def subscribe(self, on_change):
        self.on_change = on_change
        return self._unsubscribe

    def _unsubscribe(self):
        self.unsubscribed = True

    def fire(self, entry, raw_pointer, block):
        self.on_change(entry, raw_pointer, block)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def source():
    return StubEventSource()


@pytest.fixture
def runner(tmp_path, source):
    deps = MagicMock()
    deps.event_source = source
    deps.decoder.decode.side_effect = lambda raw: raw or None
    deps.probe.classify.return_value = ProbeResult.VALID
    deps.content_store.pin.return_value = True
    deps.content_store.unpin.return_value = True
    return CacheRunner(CacheStore(tmp_path / "storage.json"), deps, start_block=100)


@pytest.fixture
def listener(runner, source):
    lst = LiveListener(runner, source)
    lst.start()
    yield lst
    lst.stop()


# ---------------------------------------------------------------------------
# TestLiveListener
# ---------------------------------------------------------------------------

class TestLiveListener:

    def test_start_subscribes(self, listener, source):
        assert listener.is_running
        assert source.on_change is not None

    def test_processes_events_in_order(self, listener, source, runner):
        source.fire(E1, "QmOne", 200)
        source.fire(E1, "", 201)
        source.fire(E2, "QmTwo", 202)
        assert listener.drain()

        assert listener.processed == 3
        assert runner.state.entry_to_hash == {E2: "QmTwo"}
        assert runner.state.last_block_number == 201
        assert runner.store.load() == runner.state

    def test_one_change_at_a_time(self, runner, source):
        active = []
        overlaps = []
        original = runner.handle_change

        def slow_handle(change):
            active.append(change)
            if len(active) > 1:
                overlaps.append(change)
            time.sleep(0.01)
            try:
                return original(change)
            finally:
                active.remove(change)

        runner.handle_change = slow_handle
        lst = LiveListener(runner, source)
        lst.start()
        try:
            threads = [
                threading.Thread(target=source.fire, args=(f"0x{i:064x}", f"Qm{i}", 200 + i))
                for i in range(10)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            assert lst.drain()
        finally:
            lst.stop()

        assert overlaps == []
        assert len(runner.state.entry_to_hash) == 10

    def test_stop_unsubscribes(self, runner, source):
        lst = LiveListener(runner, source)
        lst.start()
        lst.stop()
        assert source.unsubscribed
        assert not lst.is_running

    def test_events_after_stop_ignored(self, runner, source):
        lst = LiveListener(runner, source)
        lst.start()
        lst.stop()
        source.fire(E1, "QmOne", 200)
        assert lst.pending == 0

    def test_start_twice_is_noop(self, listener, source):
        first = source.on_change
        listener.start()
        assert source.on_change is first

    def test_store_failure_stops_listener(self, runner, source):
        lst = LiveListener(runner, source)
        lst.start()
        try:
            with patch.object(runner.store, "save", side_effect=StateStoreError("disk full")):
                source.fire(E1, "QmOne", 200)
                with pytest.raises(StateStoreError, match="disk full"):
                    lst.wait(timeout=5)
        finally:
            lst.stop()

        assert not lst.is_running
        assert isinstance(lst.error, StateStoreError)
        assert runner.state.entry_to_hash == {}
        assert runner.state.last_block_number == 100

    def test_subscribe_failure_starts_no_worker(self, runner, source):
        source.subscribe = MagicMock(side_effect=ConnectionError("ws closed"))
        before = threading.active_count()
        lst = LiveListener(runner, source)
        with pytest.raises(ConnectionError):
            lst.start()
        assert not lst.is_running
        assert threading.active_count() <= before

    def test_changes_before_worker_starts_are_kept(self, runner, source):
        def subscribe_and_fire(on_change):
            on_change(E1, "QmOne", 200)
            return None

        source.subscribe = subscribe_and_fire
        lst = LiveListener(runner, source)
        lst.start()
        try:
            assert lst.drain()
        finally:
            lst.stop()
        assert runner.state.entry_to_hash == {E1: "QmOne"}

    def test_drain_returns_promptly_after_worker_stops(self, runner, source):
        lst = LiveListener(runner, source)
        lst.start()
        try:
            with patch.object(runner.store, "save", side_effect=StateStoreError("disk full")):
                source.fire(E1, "QmOne", 200)
                with pytest.raises(StateStoreError):
                    lst.wait(timeout=5)
            started = time.monotonic()
            assert lst.drain(timeout=5) is False
            assert time.monotonic() - started < 2
        finally:
            lst.stop()

    def test_drain_starts_no_threads(self, listener, source):
        before = threading.active_count()
        for _ in range(3):
            assert listener.drain(timeout=0.05)
        assert threading.active_count() <= before

    def test_unexpected_error_does_not_stop_listener(self, listener, source, runner):
        original = runner.handle_change
        calls = []

        def flaky(change: ChangeNotification):
            calls.append(change)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return original(change)

        runner.handle_change = flaky
        source.fire(E1, "QmOne", 200)
        source.fire(E2, "QmTwo", 201)
        assert listener.drain()
        assert listener.is_running
        assert listener.processed == 1
        assert runner.state.entry_to_hash == {E2: "QmTwo"}

    def test_wait_times_out_while_running(self, listener):
        assert listener.wait(timeout=0.05) is False

    def test_outcome_logged_per_event(self, listener, source, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="pincache.runner"):
            source.fire(E1, "QmOne", 200)
            assert listener.drain()
        assert any(ReconcileOutcome.PINNED.value in r.getMessage() for r in caplog.records)
