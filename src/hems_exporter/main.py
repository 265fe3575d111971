"""FastAPI application for the HEMS exporter."""

import argparse
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from hems_exporter.backends import create_backend
from hems_exporter.config import load_config
from hems_exporter.frontends import create_frontend

logger = logging.getLogger("hems_exporter")

# Module-level config path, set before app creation
_config_path: str = "/app/config.yaml"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config(_config_path)

    # Frontend first: it is the backend's sample consumer
    frontend_type = config.frontend.type
    frontend_conf = config.frontend.prometheus.model_dump()
    frontend = create_frontend(frontend_type, frontend_conf)
    app.include_router(frontend.get_router())
    await frontend.start()

    backend_type = config.backend.type
    backend_conf = config.backend.wisun.model_dump() if config.backend.wisun else {}
    backend = create_backend(backend_type, backend_conf, frontend)
    logger.info("Starting backend (%s)...", backend_type)
    await backend.start()

    logger.info(
        "HEMS exporter ready — frontend=%s, backend=%s",
        frontend_type,
        backend_type,
    )

    yield

    # Shutdown
    await backend.stop()
    await frontend.stop()


app = FastAPI(title="HEMS Exporter", lifespan=lifespan)


def run() -> None:
    """CLI entry point."""
    global _config_path

    parser = argparse.ArgumentParser(description="HEMS B-route Exporter")
    parser.add_argument(
        "-c",
        "--config",
        default="/app/config.yaml",
        help="Path to config YAML file",
    )
    args = parser.parse_args()

    _config_path = args.config
    config = load_config(_config_path)

    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    uvicorn.run(app, host=config.server.host, port=config.server.port)
