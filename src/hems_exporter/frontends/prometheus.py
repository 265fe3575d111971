"""Prometheus frontend: gauges, /metrics endpoint and readiness probe."""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

from hems_exporter.backends.base import TelemetrySample
from hems_exporter.frontends.base import Frontend

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "hems"


class PrometheusFrontend(Frontend):
    """Renders the latest sample as Prometheus gauges.

    Gauges live in a private registry so several instances can coexist
    (e.g. in tests). A decode failure leaves every gauge untouched.
    """

    def __init__(self, config: dict) -> None:
        super().__init__(config)
        namespace: str = config.get("namespace", DEFAULT_NAMESPACE)
        self._registry = CollectorRegistry()
        self._cumulative = Gauge(
            "cumulative_power_consumption",
            "Cumulative Power Consumption [kWh]",
            namespace=namespace,
            registry=self._registry,
        )
        self._windowed = Gauge(
            "latest_cumulative_power_consumption_per_unit_time",
            "Latest Cumulative Power Consumption per Unit time [kWh]",
            namespace=namespace,
            registry=self._registry,
        )
        self._power = Gauge(
            "instantaneous_power_consumption",
            "Instantaneous Power Consumption [W]",
            namespace=namespace,
            registry=self._registry,
        )
        self._current = Gauge(
            "current",
            "Current [A]",
            namespace=namespace,
            registry=self._registry,
        )
        self._phase_current = Gauge(
            "phase_current",
            "Instantaneous current per phase [A]",
            ["phase"],
            namespace=namespace,
            registry=self._registry,
        )
        self._power_factor = Gauge(
            "power_factor",
            "Power Factor [%]",
            namespace=namespace,
            registry=self._registry,
        )
        self._latest: TelemetrySample | None = None
        self._decode_failures = 0
        self._router = self._build_router()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def latest(self) -> TelemetrySample | None:
        return self._latest

    @property
    def decode_failures(self) -> int:
        return self._decode_failures

    def get_router(self) -> APIRouter:
        return self._router

    def is_ready(self) -> bool:
        return self._latest is not None

    def on_sample(self, sample: TelemetrySample | None) -> None:
        if sample is None:
            self._decode_failures += 1
            logger.debug("No sample this cycle (%d so far)", self._decode_failures)
            return
        self._cumulative.set(sample.cumulative_energy)
        self._windowed.set(sample.windowed_energy)
        self._power.set(sample.instantaneous_power)
        self._current.set(sample.current)
        self._phase_current.labels(phase="r").set(sample.r_phase_current)
        self._phase_current.labels(phase="t").set(sample.t_phase_current)
        self._power_factor.set(sample.power_factor)
        if self._latest is None:
            logger.info("First sample received, exporter is ready")
        self._latest = sample

    def _build_router(self) -> APIRouter:
        router = APIRouter()
        registry = self._registry

        @router.get("/")
        async def root():
            """Liveness."""
            return "ok"

        @router.get("/readiness")
        async def readiness():
            """Ready once a sample has been decoded."""
            if self.is_ready():
                return "ok"
            return JSONResponse("ng", status_code=404)

        @router.get("/metrics")
        async def metrics():
            """Prometheus text exposition."""
            return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

        return router
