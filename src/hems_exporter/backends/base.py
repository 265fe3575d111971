import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass
class TelemetrySample:
    """One decoded reading from the smart meter."""

    timestamp: datetime
    cumulative_energy: float = 0.0  # kWh, monotonic counter
    instantaneous_power: int = 0  # W
    r_phase_current: float = 0.0  # A
    t_phase_current: float = 0.0  # A
    current: float = 0.0  # A, R + T
    power_factor: float = 0.0  # %
    windowed_energy: float = 0.0  # kWh consumed in the last schedule window


@dataclass(frozen=True)
class NetworkAttachment:
    """PAN description reported by an active scan."""

    channel: str
    channel_page: str
    pan_id: str
    addr: str
    lqi: str
    pair_id: str


def create_sample(
    timestamp: datetime,
    cumulative_energy: float,
    instantaneous_power: int,
    r_phase_raw: int,
    t_phase_raw: int,
) -> TelemetrySample:
    """Build a sample from raw meter values, deriving current and power factor.

    Phase currents arrive in 0.1 A units. The power factor assumes the 100 V
    nominal voltage of a single-phase three-wire service and is 0.0 when no
    current flows.
    """
    total_raw = r_phase_raw + t_phase_raw
    if total_raw == 0:
        power_factor = 0.0
    else:
        # tenths, rounded half away from zero
        tenths = instantaneous_power * 100 / total_raw
        power_factor = math.copysign(math.floor(abs(tenths) + 0.5), tenths) / 10
    return TelemetrySample(
        timestamp=timestamp,
        cumulative_energy=cumulative_energy,
        instantaneous_power=instantaneous_power,
        r_phase_current=r_phase_raw / 10,
        t_phase_current=t_phase_raw / 10,
        current=total_raw / 10,
        power_factor=power_factor,
    )


class SampleConsumer(Protocol):
    """Receives every fetch result; ``None`` means the reply could not be decoded."""

    def on_sample(self, sample: TelemetrySample | None) -> None: ...


class Backend(ABC):
    """Abstract base class for meter data backends."""

    @abstractmethod
    async def start(self) -> None:
        """Start the backend (e.g., attach and begin polling)."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the backend and clean up resources."""
