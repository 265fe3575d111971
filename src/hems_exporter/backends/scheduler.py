"""Collection loop for one attached session.

A single control loop owns all mutable session state. It reacts to three
event sources, one at a time:

- the ticker, which requests a fetch every ``refresh_interval`` seconds,
- fetch completion, posted from the worker thread doing the serial I/O,
- the per-fetch deadline (twice the refresh interval).

Only the ticker starts fetches, and only when none is in flight; a tick that
arrives while a fetch is running is dropped. A fetch that outlives its
deadline ends the whole session with :class:`SessionTimeoutError`; the
caller is expected to reattach.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from croniter import croniter

from hems_exporter.backends.base import SampleConsumer, TelemetrySample
from hems_exporter.backends.connection import ConnectionManager
from hems_exporter.errors import DongleError, SessionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "0,30 * * * *"
DEFAULT_REFRESH_INTERVAL = 5.0


class WindowedDelta:
    """Energy consumed between consecutive schedule boundaries.

    The first sample becomes the baseline. A sample at or past the next
    boundary gets ``windowed_energy`` recomputed against the baseline and
    becomes the new baseline; any other sample carries the last delta forward.
    """

    def __init__(self, schedule: str = DEFAULT_SCHEDULE) -> None:
        self._schedule = schedule
        self._previous: TelemetrySample | None = None
        self._next_boundary: datetime | None = None

    @property
    def previous(self) -> TelemetrySample | None:
        return self._previous

    @property
    def next_boundary(self) -> datetime | None:
        return self._next_boundary

    def _next_after(self, moment: datetime) -> datetime:
        return croniter(self._schedule, moment).get_next(datetime)

    def reset(self, now: datetime) -> None:
        self._next_boundary = self._next_after(now)

    def apply(self, sample: TelemetrySample) -> None:
        if self._next_boundary is None:
            self.reset(sample.timestamp)
        if self._previous is None:
            self._previous = sample
            return
        if sample.timestamp >= self._next_boundary:
            sample.windowed_energy = sample.cumulative_energy - self._previous.cumulative_energy
            self._previous = sample
            self._next_boundary = self._next_after(sample.timestamp)
        else:
            sample.windowed_energy = self._previous.windowed_energy


_TICK = object()


@dataclass
class _FetchDone:
    sample: TelemetrySample | None


def _local_now() -> datetime:
    return datetime.now().astimezone()


class CollectionScheduler:
    """Polls the meter until the session fails or the task is cancelled."""

    def __init__(
        self,
        connection: ConnectionManager,
        delta: WindowedDelta,
        consumer: SampleConsumer,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._connection = connection
        self._delta = delta
        self._consumer = consumer
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._events: asyncio.Queue = asyncio.Queue()
        self._in_flight: asyncio.Task | None = None
        self._deadline = 0.0

    @property
    def fetch_timeout(self) -> float:
        return self._refresh_interval * 2

    async def run(self) -> None:
        """Run the control loop.

        Raises:
            SessionTimeoutError: a fetch did not complete within its deadline.
        """
        loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._delta.reset(self._clock())
        logger.info(
            "Collecting every %.1fs, next window boundary at %s",
            self._refresh_interval,
            self._delta.next_boundary,
        )
        ticker = asyncio.create_task(self._tick())
        try:
            self._dispatch(loop)
            while True:
                timeout = None
                if self._in_flight is not None:
                    timeout = max(0.0, self._deadline - loop.time())
                try:
                    event = await asyncio.wait_for(self._events.get(), timeout)
                except asyncio.TimeoutError:
                    raise SessionTimeoutError(
                        f"read from dongle is timeout ({self.fetch_timeout:.1f}s)"
                    ) from None

                if event is _TICK:
                    if self._in_flight is None:
                        self._dispatch(loop)
                    else:
                        logger.debug("Fetch still in flight, skipping tick")
                else:
                    self._in_flight = None
                    self._accept(event.sample)
        finally:
            pending = [ticker]
            if self._in_flight is not None:
                pending.append(self._in_flight)
                self._in_flight = None
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            self._events.put_nowait(_TICK)

    def _dispatch(self, loop: asyncio.AbstractEventLoop) -> None:
        self._deadline = loop.time() + self.fetch_timeout
        self._in_flight = asyncio.create_task(self._fetch())

    async def _fetch(self) -> None:
        loop = asyncio.get_running_loop()
        delivered = False

        def on_result(sample: TelemetrySample | None) -> None:
            nonlocal delivered
            delivered = True
            loop.call_soon_threadsafe(self._events.put_nowait, _FetchDone(sample))

        try:
            await asyncio.to_thread(self._connection.fetch_sample, on_result)
        except DongleError as exc:
            logger.warning("Fetch failed: %s", exc)
        except Exception:
            logger.exception("Unexpected error while fetching")
        if not delivered:
            self._events.put_nowait(_FetchDone(None))

    def _accept(self, sample: TelemetrySample | None) -> None:
        if sample is not None:
            self._delta.apply(sample)
            logger.debug("WH(last window): %s [kWh]", sample.windowed_energy)
        try:
            self._consumer.on_sample(sample)
        except Exception:
            logger.exception("Sample consumer failed")
