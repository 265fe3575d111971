"""Join handshake and telemetry request cycle on top of :class:`SerialLink`."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import tenacity

from hems_exporter.backends.base import TelemetrySample
from hems_exporter.backends.echonet import build_get_request, decode_erxudp
from hems_exporter.backends.serial_link import MIN_SCAN_DURATION, SerialLink
from hems_exporter.errors import AttachmentFailed, DongleConnectionError, DongleError

logger = logging.getLogger(__name__)

SETTLE_DELAY = 1.0
ECHONET_PORT = "0E1A"
UDP_HANDLE = "1"
SECURED = "1"


@dataclass
class ConnectionState:
    """An open link joined to the meter's PAN."""

    link: SerialLink
    address: str


def _log_attach_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Attach attempt %d failed (%s); retrying",
        retry_state.attempt_number,
        exc,
    )


def _local_now() -> datetime:
    return datetime.now().astimezone()


class ConnectionManager:
    """Owns one serial session: joins the PAN, then polls the meter.

    ``link_factory`` builds a fresh, unopened :class:`SerialLink` for every
    attach attempt so a retry never reuses a half-initialised handle.
    """

    def __init__(
        self,
        link_factory: Callable[[], SerialLink],
        *,
        retry_count: int = 5,
        min_scan_duration: int = MIN_SCAN_DURATION,
        settle_delay: float = SETTLE_DELAY,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._link_factory = link_factory
        self._retry_count = max(1, retry_count)
        self._min_scan_duration = min_scan_duration
        self._settle_delay = settle_delay
        self._clock = clock
        self._state: ConnectionState | None = None
        self._closed = False
        self._pending_link: SerialLink | None = None
        self._lock = threading.Lock()
        self._transaction_id = 0

    @property
    def state(self) -> ConnectionState | None:
        return self._state

    def initialize(self, password: str, route_id: str) -> None:
        """Run the join handshake, retrying the whole sequence on failure.

        Each retry scans one step longer than the previous attempt.

        Raises:
            AttachmentFailed: every attempt failed; chained to the last error.
        """
        retryer = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self._retry_count),
            retry=(
                tenacity.retry_if_exception_type(DongleError)
                & tenacity.retry_if_not_exception_type(AttachmentFailed)
            ),
            before_sleep=_log_attach_retry,
            reraise=False,
        )
        try:
            for attempt in retryer:
                with attempt:
                    duration = self._min_scan_duration + attempt.retry_state.attempt_number - 1
                    self._attach(password, route_id, duration)
        except tenacity.RetryError as exc:
            last = exc.last_attempt.exception()
            raise AttachmentFailed(
                f"Could not attach after {self._retry_count} attempts: {last}"
            ) from last

    def _attach(self, password: str, route_id: str, scan_duration: int) -> None:
        with self._lock:
            if self._closed:
                raise AttachmentFailed("Disconnected before handshake")
            link = self._link_factory()
            self._pending_link = link
        try:
            logger.info("Connect...")
            link.connect()
            time.sleep(self._settle_delay)

            version = link.query_version()
            logger.info("SKVER OK (firmware %s)", version)

            link.set_password(password)
            link.set_route_id(route_id)

            logger.debug("SKSCAN (duration %d)...", scan_duration)
            pan = link.scan(scan_duration)
            logger.info("Found PAN %s on channel %s (LQI %s)", pan.pan_id, pan.channel, pan.lqi)

            link.program_register("S2", pan.channel)
            link.program_register("S3", pan.pan_id)

            address = link.resolve_link_local_address(pan.addr)
            logger.debug("IPv6 Addr is %s", address)

            link.join(address)
        except Exception as exc:
            link.close()
            if self._closed:
                raise AttachmentFailed("Disconnected during handshake") from exc
            raise
        finally:
            with self._lock:
                self._pending_link = None
        with self._lock:
            if self._closed:
                link.close()
                raise AttachmentFailed("Disconnected during handshake")
            self._state = ConnectionState(link=link, address=address)
        logger.info("Joined PAN as %s", address)

    def fetch_sample(self, on_result: Callable[[TelemetrySample | None], None]) -> None:
        """Request one reading and hand the decoded sample to ``on_result``.

        ``on_result(None)`` signals a reply that could not be decoded. Transport
        failures propagate and ``on_result`` is not called.
        """
        if self._state is None:
            raise DongleConnectionError("Not attached to a PAN")
        self._transaction_id = (self._transaction_id + 1) & 0xFFFF
        frame = build_get_request(self._transaction_id)
        line = self._state.link.send_datagram(
            UDP_HANDLE, self._state.address, ECHONET_PORT, SECURED, frame
        )
        on_result(decode_erxudp(line, self._clock()))

    def disconnect(self) -> None:
        """Close the link and abort any handshake still in progress."""
        with self._lock:
            self._closed = True
            pending, self._pending_link = self._pending_link, None
            state, self._state = self._state, None
        if pending is not None:
            logger.info("Aborting handshake in progress")
            pending.close()
        if state is None:
            return
        state.link.close()
        logger.info("Disconnected from dongle")
