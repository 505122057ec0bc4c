"""
MKVE worker service: HTTP helpers + WebSocket protocol endpoint.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from .config import WorkerConfig
from .execution.base import MediaEngine
from .execution.simulated import SimulatedEngine
from .routes import health_router, worker_router

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[WorkerConfig] = None,
    engine: Optional[MediaEngine] = None,
) -> FastAPI:
    """
    Build the worker app.

    Args:
        config: Worker configuration (default: defaults plus environment overrides)
        engine: Engine shared by all sessions (default: SimulatedEngine)

    Returns:
        Configured FastAPI application
    """
    config = config or WorkerConfig.from_env()
    engine = engine or SimulatedEngine(features=config.features, version=config.version)

    app = FastAPI(title="MKVE Worker", version=config.version)
    app.state.worker_config = config
    app.state.engine = engine

    app.include_router(health_router)
    app.include_router(worker_router)

    logger.info(f"[SESSION] Worker app ready (ceiling {config.memory_ceiling_mb}MB, engine {engine.name})")
    return app


app = create_app()
