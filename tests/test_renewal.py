"""Unit tests for the renewal loop."""

from __future__ import annotations

import logging
import threading
import time

from kv_semaphore import MemoryStore, RenewalLoop, StoreError

PREFIX = "service/app/lock/"


class FailingStore(MemoryStore):
    """MemoryStore whose blocking reads fail a number of times."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def get(self, key, *, recurse=False, index=0, wait=None):
        if wait is not None and self.failures > 0:
            self.failures -= 1
            raise StoreError("watch failed")
        return super().get(key, recurse=recurse, index=index, wait=wait)


class Counter:
    def __init__(self) -> None:
        self.calls = 0
        self.event = threading.Event()

    def __call__(self) -> bool:
        self.calls += 1
        self.event.set()
        return True


class TestRenewalLoop:
    """Tests for RenewalLoop."""

    def test_runs_cycle_on_change(self, memory_store: MemoryStore) -> None:
        memory_store.put(PREFIX + "a", "1")
        on_change = Counter()
        loop = RenewalLoop(
            memory_store,
            prefix=PREFIX,
            on_change=on_change,
            index=memory_store.index,
            wait=5,
        ).start()
        try:
            time.sleep(0.1)
            assert on_change.calls == 0
            memory_store.put(PREFIX + "b", "2")
            assert on_change.event.wait(2)
            assert loop.index == memory_store.index
        finally:
            loop.stop()

    def test_no_cycle_on_timeout(self, memory_store: MemoryStore) -> None:
        memory_store.put(PREFIX + "a", "1")
        on_change = Counter()
        loop = RenewalLoop(
            memory_store,
            prefix=PREFIX,
            on_change=on_change,
            index=memory_store.index,
            wait=0.1,
        ).start()
        time.sleep(0.5)
        loop.stop()
        assert on_change.calls == 0

    def test_read_errors_do_not_end_loop(self, caplog) -> None:
        store = FailingStore(failures=3)
        store.put(PREFIX + "a", "1")
        on_change = Counter()
        with caplog.at_level(logging.ERROR):
            loop = RenewalLoop(
                store,
                prefix=PREFIX,
                on_change=on_change,
                index=store.index,
                wait=5,
                error_delay=0.01,
            ).start()
            time.sleep(0.2)
            assert loop.is_alive()
            store.put(PREFIX + "b", "2")
            assert on_change.event.wait(2)
            loop.stop()
        assert "Watching service/app/lock/ failed" in caplog.text

    def test_cycle_errors_do_not_end_loop(self, memory_store: MemoryStore) -> None:
        calls = []

        def on_change() -> None:
            calls.append(1)
            raise StoreError("write failed")

        memory_store.put(PREFIX + "a", "1")
        loop = RenewalLoop(
            memory_store,
            prefix=PREFIX,
            on_change=on_change,
            index=memory_store.index,
            wait=5,
            error_delay=0.01,
        ).start()
        memory_store.put(PREFIX + "b", "2")
        time.sleep(0.2)
        memory_store.put(PREFIX + "c", "3")
        time.sleep(0.2)
        assert loop.is_alive()
        assert len(calls) == 2
        loop.stop()

    def test_stop_is_idempotent_and_prompt(self, memory_store: MemoryStore) -> None:
        memory_store.put(PREFIX + "a", "1")
        loop = RenewalLoop(
            memory_store,
            prefix=PREFIX,
            on_change=Counter(),
            index=memory_store.index,
            wait=30,
        ).start()
        start = time.monotonic()
        loop.stop(timeout=0.2)
        loop.stop(timeout=0.2)
        assert time.monotonic() - start < 1
        assert loop.stopped

    def test_stop_before_start(self, memory_store: MemoryStore) -> None:
        loop = RenewalLoop(memory_store, prefix=PREFIX, on_change=Counter())
        assert loop.stop()
