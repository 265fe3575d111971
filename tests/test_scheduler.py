"""Tests for the collection loop and windowed energy delta."""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from hems_exporter.backends.base import TelemetrySample
from hems_exporter.backends.scheduler import CollectionScheduler, WindowedDelta
from hems_exporter.errors import SendError, SessionTimeoutError
from tests.conftest import T0


def _sample(minutes: float, cumulative: float) -> TelemetrySample:
    return TelemetrySample(timestamp=T0 + timedelta(minutes=minutes), cumulative_energy=cumulative)


# --- WindowedDelta ---


def test_reset_sets_next_boundary():
    delta = WindowedDelta("0,30 * * * *")

    delta.reset(T0)

    assert delta.next_boundary == T0.replace(minute=30)


def test_first_sample_is_baseline():
    delta = WindowedDelta("0,30 * * * *")
    delta.reset(T0)
    baseline = _sample(0, 100.0)

    delta.apply(baseline)

    assert delta.previous is baseline
    assert baseline.windowed_energy == 0.0
    assert delta.next_boundary == T0.replace(minute=30)


def test_delta_recomputed_at_boundary_and_carried_forward():
    delta = WindowedDelta("0,30 * * * *")
    delta.reset(T0)
    t0 = _sample(0, 100.0)
    t1 = _sample(25, 102.5)  # exactly on the 10:30 boundary
    t2 = _sample(40, 103.0)

    delta.apply(t0)
    delta.apply(t1)
    delta.apply(t2)

    assert t1.windowed_energy == 2.5
    assert t2.windowed_energy == 2.5
    assert t2.cumulative_energy == 103.0
    assert delta.previous is t1
    assert delta.next_boundary == T0.replace(hour=11, minute=0)


def test_samples_before_boundary_keep_zero_delta():
    delta = WindowedDelta("0,30 * * * *")
    delta.reset(T0)
    delta.apply(_sample(0, 100.0))
    early = _sample(10, 101.0)

    delta.apply(early)

    assert early.windowed_energy == 0.0


def test_boundary_advances_past_skipped_windows():
    delta = WindowedDelta("0,30 * * * *")
    delta.reset(T0)
    delta.apply(_sample(0, 100.0))
    late = _sample(100, 110.0)  # 11:45, two boundaries later

    delta.apply(late)

    assert late.windowed_energy == 10.0
    assert delta.next_boundary == T0.replace(hour=12, minute=0)


def test_custom_schedule():
    delta = WindowedDelta("0 * * * *")
    delta.reset(T0)

    assert delta.next_boundary == T0.replace(hour=11, minute=0)


# --- CollectionScheduler ---


class FakeConnection:
    """Answers each fetch with the next scripted result.

    A result may be a sample, None (decode failure) or an exception to raise.
    """

    def __init__(self, results, delay: float = 0.0) -> None:
        self._results = list(results)
        self._delay = delay
        self._lock = threading.Lock()
        self.calls = 0
        self.concurrent = 0
        self.max_concurrent = 0

    def fetch_sample(self, on_result) -> None:
        with self._lock:
            self.calls += 1
            self.concurrent += 1
            self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            if self._delay:
                time.sleep(self._delay)
            result = self._results.pop(0) if self._results else None
            if isinstance(result, Exception):
                raise result
            on_result(result)
        finally:
            with self._lock:
                self.concurrent -= 1


async def _run_until(scheduler: CollectionScheduler, predicate, timeout: float = 2.0) -> None:
    task = asyncio.create_task(scheduler.run())
    try:
        deadline = time.monotonic() + timeout
        while not predicate():
            assert not task.done(), task.exception()
            assert time.monotonic() < deadline, "condition not reached"
            await asyncio.sleep(0.005)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


async def test_samples_flow_through_delta_to_consumer(consumer):
    connection = FakeConnection([_sample(5, 100.0), _sample(26, 101.5), _sample(35, 102.0)])
    scheduler = CollectionScheduler(
        connection,
        WindowedDelta("0,30 * * * *"),
        consumer,
        refresh_interval=0.01,
        clock=lambda: T0,
    )

    await _run_until(scheduler, lambda: len(consumer.received) >= 3)

    first, second, third = consumer.received[:3]
    assert first.windowed_energy == 0.0
    assert second.windowed_energy == 1.5
    assert third.windowed_energy == 1.5
    assert third.cumulative_energy == 102.0


async def test_decode_failure_reaches_consumer_as_none(consumer):
    connection = FakeConnection([None, _sample(5, 100.0)])
    delta = WindowedDelta("0,30 * * * *")
    scheduler = CollectionScheduler(connection, delta, consumer, refresh_interval=0.01, clock=lambda: T0)

    await _run_until(scheduler, lambda: len(consumer.received) >= 2)

    assert consumer.received[0] is None
    assert consumer.received[1].cumulative_energy == 100.0
    assert delta.previous is consumer.received[1]


async def test_send_error_does_not_end_session(consumer):
    connection = FakeConnection([SendError("FAIL ER04"), _sample(5, 100.0)])
    scheduler = CollectionScheduler(
        connection, WindowedDelta(), consumer, refresh_interval=0.01, clock=lambda: T0
    )

    await _run_until(scheduler, lambda: len(consumer.samples) >= 1)

    assert consumer.received[0] is None


async def test_stalled_fetch_ends_session(consumer):
    release = threading.Event()

    class StalledConnection:
        def fetch_sample(self, on_result):
            release.wait(2.0)

    scheduler = CollectionScheduler(
        StalledConnection(), WindowedDelta(), consumer, refresh_interval=0.02, clock=lambda: T0
    )
    try:
        started = time.monotonic()
        with pytest.raises(SessionTimeoutError):
            await asyncio.wait_for(scheduler.run(), timeout=1.0)
        assert time.monotonic() - started >= scheduler.fetch_timeout
    finally:
        release.set()
    assert consumer.received == []


async def test_fetches_never_overlap(consumer):
    connection = FakeConnection([], delay=0.13)
    scheduler = CollectionScheduler(
        connection, WindowedDelta(), consumer, refresh_interval=0.1, clock=lambda: T0
    )

    await _run_until(scheduler, lambda: len(consumer.received) >= 3)

    assert connection.max_concurrent == 1


async def test_consumer_error_does_not_end_session():
    class BrokenConsumer:
        def __init__(self):
            self.calls = 0

        def on_sample(self, sample):
            self.calls += 1
            raise RuntimeError("boom")

    broken = BrokenConsumer()
    scheduler = CollectionScheduler(
        FakeConnection([]), WindowedDelta(), broken, refresh_interval=0.01, clock=lambda: T0
    )

    await _run_until(scheduler, lambda: broken.calls >= 2)
