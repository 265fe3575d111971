from hems_exporter.backends.base import Backend, SampleConsumer
from hems_exporter.backends.wisun import WiSunBackend

_BACKENDS: dict[str, type[Backend]] = {
    "wisun": WiSunBackend,
}


def create_backend(backend_type: str, config: dict, consumer: SampleConsumer) -> Backend:
    """Create a backend instance by type name."""
    cls = _BACKENDS.get(backend_type)
    if cls is None:
        raise ValueError(
            f"Unknown backend type: {backend_type!r}. Available: {', '.join(_BACKENDS)}"
        )
    return cls(config, consumer)
