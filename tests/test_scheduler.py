"""Tests for the scrape scheduler."""

import asyncio
import threading
import time

import pytest

from haproxy_exporter import ConfigurationError, ScrapeResult, ScrapeScheduler


class FakeExporter:
    """Stands in for an Exporter, records calls and concurrency."""

    def __init__(self, uri, gate=None, result=None, delay=0.0, tracker=None):
        self.uri = uri
        self.gate = gate
        self.result = result or ScrapeResult()
        self.delay = delay
        self.tracker = tracker
        self.calls = 0
        self.closed = False

    def scrape(self):
        self.calls += 1
        if self.tracker:
            self.tracker.enter()
        try:
            if self.gate:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            return self.result
        finally:
            if self.tracker:
                self.tracker.leave()

    def close(self):
        self.closed = True


class ConcurrencyTracker:
    def __init__(self):
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def enter(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self):
        with self._lock:
            self.active -= 1


@pytest.fixture
def make_scheduler(logger):
    schedulers = []

    def _make(exporters, cycle=1.0, max_concurrent=2, labels=None):
        scheduler = ScrapeScheduler(exporters, cycle, max_concurrent, logger, labels=labels)
        schedulers.append(scheduler)
        return scheduler

    yield _make
    for scheduler in schedulers:
        scheduler.shutdown(wait=True)


def test_requires_exporters(logger):
    with pytest.raises(ConfigurationError):
        ScrapeScheduler([], 1.0, 2, logger)


def test_tick_interval_divides_cycle(make_scheduler):
    exporters = [FakeExporter(f"file:///{i}") for i in range(4)]
    assert make_scheduler(exporters, cycle=1.0).tick_interval == pytest.approx(0.25)


def test_tick_interval_has_floor(make_scheduler):
    exporters = [FakeExporter(f"file:///{i}") for i in range(5000)]
    assert make_scheduler(exporters, cycle=1.0).tick_interval == ScrapeScheduler.MIN_TICK_INTERVAL


def test_round_robin_order(make_scheduler):
    order = []

    class Recording(FakeExporter):
        def scrape(self):
            order.append(self.uri)
            return super().scrape()

    scheduler = make_scheduler([Recording(uri) for uri in ("a", "b", "c")], max_concurrent=1)
    for _ in range(7):
        scheduler.tick().result(timeout=5)

    assert order == ["a", "b", "c", "a", "b", "c", "a"]


def test_full_slots_skip_without_advancing(make_scheduler):
    gate = threading.Event()
    exporters = [FakeExporter(uri, gate=gate) for uri in ("a", "b", "c", "d")]
    scheduler = make_scheduler(exporters, max_concurrent=2)

    results = [scheduler.tick() for _ in range(5)]
    dispatched = [future for future in results if future is not None]
    assert len(dispatched) == 2
    assert results[2:] == [None, None, None]

    stats = scheduler.stats.snapshot()
    assert stats["attempted"] == 2
    assert stats["skipped"] == 3
    assert stats["in_flight"] == 2

    gate.set()
    for future in dispatched:
        future.result(timeout=5)

    scheduler.tick().result(timeout=5)
    assert [e.calls for e in exporters] == [1, 1, 1, 0]


def test_attempted_plus_skipped_equals_ticks(make_scheduler):
    tracker = ConcurrencyTracker()
    exporters = [FakeExporter(f"file:///{i}", delay=0.01, tracker=tracker) for i in range(10)]
    scheduler = make_scheduler(exporters, max_concurrent=3)

    futures = []
    for _ in range(60):
        future = scheduler.tick()
        if future:
            futures.append(future)
        time.sleep(0.001)
    for future in futures:
        future.result(timeout=5)

    stats = scheduler.stats.snapshot()
    assert stats["attempted"] + stats["skipped"] == 60
    assert stats["attempted"] == len(futures)
    assert tracker.max_active <= 3
    assert stats["in_flight"] == 0


def test_failures_and_row_failures_are_counted(make_scheduler):
    bad = FakeExporter("bad", result=ScrapeResult(failed=True, error="HTTP status 500"))
    rough = FakeExporter("rough", result=ScrapeResult(row_failures=4))
    scheduler = make_scheduler([bad, rough, bad], max_concurrent=1)

    for _ in range(3):
        scheduler.tick().result(timeout=5)

    stats = scheduler.stats.snapshot()
    assert stats["failed"] == 2
    assert stats["row_failures"] == 4
    assert stats["consecutive_failures"] == 1


def test_consecutive_failures_drive_health(make_scheduler):
    bad = FakeExporter("bad", result=ScrapeResult(failed=True))
    scheduler = make_scheduler([bad], max_concurrent=1)

    for _ in range(3):
        scheduler.tick().result(timeout=5)

    assert scheduler.stats.is_healthy(4)
    assert not scheduler.stats.is_healthy(3)


def test_unexpected_exception_releases_slot(make_scheduler):
    class Exploding(FakeExporter):
        def scrape(self):
            raise RuntimeError("boom")

    scheduler = make_scheduler([Exploding("x")], max_concurrent=1)
    result = scheduler.tick().result(timeout=5)

    assert result.failed
    assert scheduler.tick() is not None
    assert scheduler.stats.snapshot()["failed"] >= 1


def test_run_ticks_until_shutdown(make_scheduler):
    exporters = [FakeExporter("a"), FakeExporter("b")]
    scheduler = make_scheduler(exporters, cycle=0.05, max_concurrent=2)

    async def drive():
        shutdown = asyncio.Event()
        task = asyncio.create_task(scheduler.run(shutdown))
        await asyncio.sleep(0.3)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(drive())
    attempted = scheduler.stats.snapshot()["attempted"]
    assert attempted >= 2
    time.sleep(0.1)
    assert scheduler.stats.snapshot()["attempted"] == attempted


def test_shutdown_closes_exporters(logger):
    exporters = [FakeExporter("a"), FakeExporter("b")]
    scheduler = ScrapeScheduler(exporters, 1.0, 1, logger)
    scheduler.shutdown()
    assert all(e.closed for e in exporters)


def test_in_flight_drops_before_slot_is_freed(make_scheduler):
    scheduler = make_scheduler([FakeExporter("a")], max_concurrent=1)
    slots = scheduler._slots
    in_flight_at_release = []

    class WatchedSlots:
        def acquire(self, blocking=True):
            return slots.acquire(blocking)

        def release(self):
            in_flight_at_release.append(scheduler.stats.snapshot()["in_flight"])
            slots.release()

    scheduler._slots = WatchedSlots()
    scheduler.tick().result(timeout=5)
    scheduler.tick().result(timeout=5)

    assert in_flight_at_release == [0, 0]
