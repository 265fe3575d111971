"""Frontend registry and factory."""

from hems_exporter.frontends.base import Frontend
from hems_exporter.frontends.prometheus import PrometheusFrontend

_FRONTENDS: dict[str, type[Frontend]] = {
    "prometheus": PrometheusFrontend,
}


def create_frontend(frontend_type: str, config: dict) -> Frontend:
    """Create a frontend instance by type name."""
    cls = _FRONTENDS.get(frontend_type)
    if cls is None:
        raise ValueError(
            f"Unknown frontend type: {frontend_type!r}. Available: {', '.join(_FRONTENDS)}"
        )
    return cls(config)
