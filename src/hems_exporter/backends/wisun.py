import asyncio
import logging
from functools import partial

from hems_exporter.backends.base import Backend, SampleConsumer
from hems_exporter.backends.connection import ConnectionManager
from hems_exporter.backends.scheduler import (
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_SCHEDULE,
    CollectionScheduler,
    WindowedDelta,
)
from hems_exporter.backends.serial_link import (
    DEFAULT_BAUDRATE,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_SCAN_TIMEOUT,
    MIN_SCAN_DURATION,
    SerialLink,
)
from hems_exporter.errors import DongleError

logger = logging.getLogger(__name__)

DEFAULT_RESTART_DELAY = 5.0


class WiSunBackend(Backend):
    """Backend that reads a smart meter over a Wi-SUN B-route dongle.

    Runs attach-and-collect sessions back to back. Whenever a session ends,
    for whatever reason, the link is closed and a new session starts from a
    fresh handshake after ``restart_delay`` seconds.
    """

    def __init__(self, config: dict, consumer: SampleConsumer) -> None:
        self._device: str = config.get("device", "/dev/ttyUSB0")
        self._baudrate: int = config.get("baudrate", DEFAULT_BAUDRATE)
        self._read_timeout: float = config.get("read_timeout", DEFAULT_READ_TIMEOUT)
        self._scan_timeout: float = config.get("scan_timeout", DEFAULT_SCAN_TIMEOUT)
        self._min_scan_duration: int = config.get("min_scan_duration", MIN_SCAN_DURATION)
        self._password: str = config["password"]
        self._route_id: str = config["route_id"]
        self._refresh_interval: float = config.get("refresh_seconds", DEFAULT_REFRESH_INTERVAL)
        self._retry_count: int = config.get("connect_retry_count", 5)
        self._restart_delay: float = config.get("restart_delay", DEFAULT_RESTART_DELAY)
        self._consumer = consumer
        self._delta = WindowedDelta(config.get("schedule", DEFAULT_SCHEDULE))
        self._connection: ConnectionManager | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_attached(self) -> bool:
        return self._connection is not None and self._connection.state is not None

    def _new_link(self) -> SerialLink:
        return SerialLink(
            self._device,
            baudrate=self._baudrate,
            read_timeout=self._read_timeout,
            scan_timeout=self._scan_timeout,
        )

    def _new_connection(self) -> ConnectionManager:
        return ConnectionManager(
            self._new_link,
            retry_count=self._retry_count,
            min_scan_duration=self._min_scan_duration,
        )

    async def start(self) -> None:
        self._task = asyncio.create_task(self._run_forever())
        logger.info(
            "Wi-SUN backend started — device %s, refresh every %.1fs",
            self._device,
            self._refresh_interval,
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._disconnect()
        logger.info("Wi-SUN backend stopped")

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.run_session()
            except asyncio.CancelledError:
                raise
            except DongleError as exc:
                logger.error("Session ended: %s", exc)
            except Exception:
                logger.exception("Session ended unexpectedly")
            logger.info("Restarting in %.1fs", self._restart_delay)
            await asyncio.sleep(self._restart_delay)

    async def run_session(self) -> None:
        """Attach to the meter and collect until the session fails.

        The connection is always torn down on exit, including cancellation.
        """
        connection = self._new_connection()
        self._connection = connection
        try:
            await asyncio.to_thread(
                partial(connection.initialize, self._password, self._route_id)
            )
            scheduler = CollectionScheduler(
                connection,
                self._delta,
                self._consumer,
                refresh_interval=self._refresh_interval,
            )
            await scheduler.run()
        finally:
            self._disconnect()

    def _disconnect(self) -> None:
        if self._connection is not None:
            self._connection.disconnect()
            self._connection = None
