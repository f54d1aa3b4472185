"""Integration tests for kv-semaphore using Docker Redis.

These tests run semaphores on ``RedisStore`` across threads and processes.
"""

from __future__ import annotations

import contextlib
import json
import multiprocessing
import time
from typing import TYPE_CHECKING

from kv_semaphore import AdmissionStatus, RedisStore, Semaphore, lock
from tests.conftest import requires_docker

if TYPE_CHECKING:
    from redis import Redis


def _multiprocess_worker(
    worker_id: int, redis_url: str, key: str, results_queue: multiprocessing.Queue
) -> None:
    """Worker function for multiprocess test (must be at module level for pickling)."""
    from redis import Redis

    from kv_semaphore import RedisStore, lock

    r = None
    try:
        r = Redis.from_url(redis_url, socket_timeout=30)

        def work() -> None:
            results_queue.put((worker_id, "acquired", time.time()))
            time.sleep(0.3)  # Shorter sleep for faster tests
            results_queue.put((worker_id, "done", time.time()))

        lock(key, 2, work=work, store=RedisStore(redis=r), wait=1.0)
        results_queue.put((worker_id, "released", time.time()))
    except Exception as e:
        results_queue.put((worker_id, "error", str(e)))
    finally:
        if r is not None:
            with contextlib.suppress(Exception):
                r.close()


def _document(redis_store: RedisStore, sem: Semaphore) -> dict:
    return json.loads(redis_store.get(sem.lock_key).entries[0].value)


@requires_docker
class TestRedisSemaphore:
    """Semaphore scenarios on a Redis-backed store."""

    def test_three_contenders_limit_two(
        self, redis_store: RedisStore, unique_key: str
    ) -> None:
        sems = [
            Semaphore(name=unique_key, limit=2, store=redis_store) for _ in range(3)
        ]
        try:
            results = [sem.lock() for sem in sems]
            assert results == [True, True, False]
            for sem in sems:
                sem.try_lock()

            holders = _document(redis_store, sems[0])["Holders"]
            assert set(holders) == {sems[0].session.id, sems[1].session.id}
            assert not sems[2].locked()
            assert sems[2].status is AdmissionStatus.WAITING
        finally:
            for sem in sems:
                sem.release()

    def test_release(self, redis_store: RedisStore, unique_key: str) -> None:
        sem = Semaphore(name=unique_key, limit=2, store=redis_store)
        sem.lock()
        assert sem.locked()

        assert sem.release()
        assert _document(redis_store, sem)["Holders"] == {}
        assert not redis_store.get(sem.contender_key)

    def test_expired_holder_is_pruned(
        self, redis_store: RedisStore, unique_key: str
    ) -> None:
        """Test that a holder whose heartbeat stopped loses its slot."""
        dying = Semaphore(name=unique_key, limit=1, store=redis_store, session_ttl=0.3)
        waiting = Semaphore(name=unique_key, limit=1, store=redis_store)
        try:
            assert dying.lock()
            assert not waiting.lock()

            dying.session.stop_heartbeat()
            time.sleep(0.6)
            assert waiting.try_lock()
            assert _document(redis_store, waiting)["Holders"] == {
                waiting.session.id: True
            }
        finally:
            dying.release()
            waiting.release()

    def test_renewal_picks_up_released_slot(
        self, redis_store: RedisStore, unique_key: str
    ) -> None:
        first = Semaphore(name=unique_key, limit=1, store=redis_store, wait=1.0)
        second = Semaphore(name=unique_key, limit=1, store=redis_store, wait=1.0)
        try:
            first.lock()
            second.lock()
            second.renew()

            first.release()
            deadline = time.monotonic() + 5
            while second.status is not AdmissionStatus.ADMITTED:
                assert time.monotonic() < deadline
                time.sleep(0.05)
            assert second.locked()
        finally:
            first.release()
            second.release()

    def test_scoped_lock(self, redis_store: RedisStore, unique_key: str) -> None:
        calls = []
        sem = lock(unique_key, 1, work=lambda: calls.append(1), store=redis_store)
        assert calls == [1]
        assert sem.released
        assert not redis_store.get(sem.contender_key)


@requires_docker
class TestMultiProcess:
    """Tests for multi-process semaphore usage."""

    def test_multiprocess_semaphore(
        self, docker_redis: str, redis_client: Redis, unique_key: str
    ) -> None:
        """Test semaphore works across multiple processes."""
        results: multiprocessing.Queue = multiprocessing.Queue()

        # Start 4 workers competing for 2 slots
        processes = []
        for i in range(4):
            p = multiprocessing.Process(
                target=_multiprocess_worker,
                args=(i, docker_redis, unique_key, results),
            )
            processes.append(p)
            p.start()

        for p in processes:
            p.join(timeout=30)

        # Terminate any hanging processes
        for p in processes:
            if p.is_alive():
                p.terminate()
                p.join(timeout=5)

        # Collect results
        intervals: dict[int, list[float]] = {}
        errors = []
        while not results.empty():
            worker_id, status, data = results.get()
            if status in ("acquired", "done"):
                intervals.setdefault(worker_id, []).append(data)
            elif status == "error":
                errors.append((worker_id, data))

        assert not errors, f"Worker errors: {errors}"

        # All 4 workers should have held the semaphore at some point
        assert len(intervals) == 4

        # Never more than 2 holders at once
        events = sorted(
            [(start, 1) for start, _ in intervals.values()]
            + [(end, -1) for _, end in intervals.values()],
            key=lambda event: (event[0], event[1]),
        )
        holding = 0
        for _, delta in events:
            holding += delta
            assert holding <= 2

        store = RedisStore(redis=redis_client)
        document = json.loads(
            store.get(f"service/{unique_key}/lock/.lock").entries[0].value
        )
        assert document == {"Holders": {}, "Limit": 2}
