"""Abstract base class for exporter frontends."""

from abc import ABC, abstractmethod

from fastapi import APIRouter

from hems_exporter.backends.base import TelemetrySample


class Frontend(ABC):
    """A frontend consumes samples from a backend and exposes them over HTTP."""

    def __init__(self, config: dict) -> None:
        self._config = config

    @abstractmethod
    def get_router(self) -> APIRouter:
        """Return the APIRouter with this frontend's HTTP endpoints."""

    @abstractmethod
    def on_sample(self, sample: TelemetrySample | None) -> None:
        """Receive a fetch result; ``None`` marks a reply that failed to decode."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether at least one sample has been received."""

    async def start(self) -> None:
        """Start frontend services."""

    async def stop(self) -> None:
        """Stop frontend services."""
