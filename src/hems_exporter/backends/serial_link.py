"""SK command set driver for the Wi-SUN B-route dongle."""

import logging
import time
from typing import Any

import serial

from hems_exporter.backends.base import NetworkAttachment
from hems_exporter.errors import (
    DongleConnectionError,
    JoinError,
    ProtocolError,
    ScanTimeoutError,
    SendError,
)

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_SCAN_TIMEOUT = 60.0
MIN_SCAN_DURATION = 6
SCAN_RETRY_DELAY = 0.5

# Event markers emitted by the dongle
EVENT_SCAN_COMPLETE = "EVENT 22 "
EVENT_PANA_FAILED = "EVENT 24 "
EVENT_PANA_COMPLETE = "EVENT 25 "
RECEIVE_UDP = "ERXUDP "
FAIL = "FAIL "

# Scan output label -> NetworkAttachment field
_SCAN_LABELS = {
    "Channel:": "channel",
    "Channel Page:": "channel_page",
    "Pan ID:": "pan_id",
    "Addr:": "addr",
    "LQI:": "lqi",
    "PairID:": "pair_id",
}


class SerialLink:
    """Line-oriented command/response exchange over an exclusive serial port.

    Every read blocks for at most ``read_timeout`` seconds. A read that
    returns nothing is treated as the end of the reply.
    """

    def __init__(
        self,
        device: str,
        baudrate: int = DEFAULT_BAUDRATE,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
    ) -> None:
        self._device = device
        self._baudrate = baudrate
        self._read_timeout = read_timeout
        self._scan_timeout = scan_timeout
        self._port: Any = None

    @property
    def is_open(self) -> bool:
        return self._port is not None

    def connect(self) -> None:
        try:
            self._port = serial.serial_for_url(
                self._device,
                baudrate=self._baudrate,
                timeout=self._read_timeout,
                exclusive=True,
            )
        except (serial.SerialException, OSError) as exc:
            raise DongleConnectionError(f"Cannot open {self._device}: {exc}") from exc
        logger.info("Opened %s at %d baud", self._device, self._baudrate)

    def close(self) -> None:
        if self._port is None:
            return
        try:
            self._port.close()
        except (serial.SerialException, OSError):
            logger.warning("Error while closing %s", self._device, exc_info=True)
        self._port = None

    # ── low level ────────────────────────────────────────────────────

    def _write(self, data: bytes) -> None:
        port = self._port
        if port is None:
            raise DongleConnectionError(f"{self._device} is not open")
        try:
            port.write(data)
            port.flush()
        except (serial.SerialException, OSError) as exc:
            raise DongleConnectionError(f"Write to {self._device} failed: {exc}") from exc

    def _command(self, line: str) -> None:
        logger.debug("[COMMAND] << %s", line)
        self._write(line.encode("ascii") + b"\r\n")

    def _read_line(self) -> str | None:
        """Return the next line without its terminator, or None if the read timed out."""
        port = self._port
        if port is None:
            raise DongleConnectionError(f"{self._device} is not open")
        try:
            raw = port.readline()
        except (serial.SerialException, OSError) as exc:
            raise DongleConnectionError(f"Read from {self._device} failed: {exc}") from exc
        if not raw:
            return None
        line = raw.decode("ascii", errors="replace").rstrip("\r\n")
        if line:
            logger.debug("[RESPONSE] >> %s", line)
        return line

    def _read_until_ok(self) -> tuple[list[str], bool]:
        lines: list[str] = []
        while (line := self._read_line()) is not None:
            lines.append(line)
            if line == "OK":
                return lines, True
        return lines, False

    # ── commands ─────────────────────────────────────────────────────

    def query_version(self) -> str:
        self._command("SKVER")
        lines, _ = self._read_until_ok()
        if len(lines) > 1 and " " in lines[1]:
            return lines[1].split(" ")[1]
        raise ProtocolError(f"Bad SKVER response: {lines!r}")

    def set_password(self, password: str) -> None:
        logger.debug("[COMMAND] << SKSETPWD C ********")
        self._write(f"SKSETPWD C {password}\r\n".encode("ascii"))

    def set_route_id(self, route_id: str) -> None:
        self._command(f"SKSETRBID {route_id}")

    def scan(self, min_duration: int) -> NetworkAttachment:
        """Actively scan for the meter's PAN.

        Rescans after a short pause until one scan reports every field, or
        raises :class:`ScanTimeoutError` once the overall deadline passes.
        """
        duration = max(min_duration, MIN_SCAN_DURATION)
        deadline = time.monotonic() + self._scan_timeout
        while time.monotonic() < deadline:
            self._command(f"SKSCAN 2 FFFFFFFF {duration}")
            fields = self._read_scan_block(deadline)
            missing = [name for name in _SCAN_LABELS.values() if not fields.get(name)]
            if not missing:
                return NetworkAttachment(**fields)
            logger.warning("Scan incomplete (missing %s), rescanning", ", ".join(missing))
            time.sleep(SCAN_RETRY_DELAY)
        raise ScanTimeoutError(f"SKSCAN did not find a PAN within {self._scan_timeout}s")

    def _read_scan_block(self, deadline: float) -> dict[str, str]:
        fields: dict[str, str] = {}
        while time.monotonic() < deadline:
            line = self._read_line()
            if line is None:
                break
            for label, name in _SCAN_LABELS.items():
                if label in line:
                    fields[name] = line.split(":", 1)[1].strip()
                    break
            if EVENT_SCAN_COMPLETE in line:
                break
        return fields

    def program_register(self, key: str, value: str) -> None:
        self._command(f"SKSREG {key} {value}")
        while (line := self._read_line()) is not None:
            if line == "OK":
                return
            if line.startswith(FAIL):
                raise ProtocolError(f"SKSREG {key} rejected: {line}")
        raise ProtocolError(f"No acknowledgement for SKSREG {key}")

    def resolve_link_local_address(self, hw_addr: str) -> str:
        self._command(f"SKLL64 {hw_addr}")
        echo = self._read_line()
        address = self._read_line()
        if echo is None or address is None:
            raise ProtocolError("SKLL64 reply was cut short")
        return address.strip()

    def join(self, address: str) -> None:
        self._command(f"SKJOIN {address}")
        while (line := self._read_line()) is not None:
            if line.startswith(FAIL) or EVENT_PANA_FAILED in line:
                raise JoinError(line)
            if EVENT_PANA_COMPLETE in line:
                # trailing status line after the PANA event
                self._read_line()
                return
        raise ProtocolError("SKJOIN did not report completion")

    def send_datagram(
        self, handle: str, addr: str, port: str, security: str, payload: bytes
    ) -> str:
        """Send a UDP datagram and return the raw ERXUDP line of the reply."""
        header = f"SKSENDTO {handle} {addr} {port} {security} {len(payload):04X} "
        logger.debug("[COMMAND] << %s%s", header, payload.hex().upper())
        self._write(header.encode("ascii") + payload + b"\r\n")
        while (line := self._read_line()) is not None:
            if line.startswith(FAIL):
                raise SendError(f"SKSENDTO failed: {line}")
            if line.startswith(RECEIVE_UDP):
                return line
        raise SendError("No ERXUDP reply to SKSENDTO")
