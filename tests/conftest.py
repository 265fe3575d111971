"""Shared test fixtures."""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from hems_exporter.backends import serial_link
from hems_exporter.backends.base import TelemetrySample
from hems_exporter.frontends.prometheus import PrometheusFrontend

T0 = datetime(2026, 1, 15, 10, 5, tzinfo=timezone.utc)

METER_ADDR = "FE80:0000:0000:0000:021D:1290:1234:5678"

# Get_Res from 028801: D7=01, E1=01, E0=1234, E7=500, E8=(20, 15)
METER_PAYLOAD = (
    "1081" "0001" "028801" "05FF01" "72" "05"
    "D70101" "E10101" "E004000004D2" "E704000001F4" "E8040014000F"
)
ERXUDP_LINE = (
    f"ERXUDP {METER_ADDR} FE80:0000:0000:0000:021D:1290:0003:8001 "
    f"0E1A 0E1A 001D129012345678 1 0024 {METER_PAYLOAD}"
)


class FakePort:
    """Scripted stand-in for a pyserial port.

    ``responses`` maps a command name (``SKVER``, ``SKSCAN``...) to a list of
    reply batches. Each write of that command queues the next batch; the last
    batch is reused once the others are consumed. ``readline`` returns
    ``b""`` when nothing is queued, like a read that timed out.
    """

    def __init__(self, responses: dict[str, list[list[str]]] | None = None) -> None:
        self.written: list[bytes] = []
        self.closed = False
        self._responses = responses or {}
        self._buffer: list[bytes] = []

    def write(self, data: bytes) -> int:
        self.written.append(data)
        command = data.split(b" ")[0].split(b"\r")[0].decode("ascii")
        batches = self._responses.get(command)
        if batches:
            batch = batches.pop(0) if len(batches) > 1 else batches[0]
            self._buffer.extend(line.encode("ascii") + b"\r\n" for line in batch)
        return len(data)

    def flush(self) -> None:
        pass

    def readline(self) -> bytes:
        if self._buffer:
            return self._buffer.pop(0)
        return b""

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_link(monkeypatch):
    """Return a factory for connected SerialLinks backed by a FakePort."""

    def factory(responses=None, **kwargs):
        port = FakePort(responses)
        monkeypatch.setattr(serial_link.serial, "serial_for_url", lambda *a, **k: port)
        link = serial_link.SerialLink("/dev/ttyFAKE", **kwargs)
        link.connect()
        return link, port

    return factory


class RecordingConsumer:
    """Sample consumer that keeps everything it receives."""

    def __init__(self) -> None:
        self.received: list[TelemetrySample | None] = []

    def on_sample(self, sample: TelemetrySample | None) -> None:
        self.received.append(sample)

    @property
    def samples(self) -> list[TelemetrySample]:
        return [s for s in self.received if s is not None]


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def frontend():
    return PrometheusFrontend({"namespace": "hems"})


@pytest.fixture
def client(frontend):
    """FastAPI test client with a Prometheus frontend (no lifespan)."""
    test_app = FastAPI()
    test_app.include_router(frontend.get_router())
    with TestClient(test_app) as c:
        yield c
