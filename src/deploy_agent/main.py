"""Main entry point for the deploy agent."""

import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from deploy_agent import __version__
from deploy_agent.api.deploy import router as deploy_router
from deploy_agent.api.health import router as health_router
from deploy_agent.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from deploy_agent.core.config import Settings, TargetRegistry
from deploy_agent.deploy.auth import Authenticator
from deploy_agent.deploy.orchestrator import ReleaseOrchestrator
from deploy_agent.utils.logging import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting deploy agent",
        version=__version__,
        targets=sorted(app.state.registry),
    )
    yield
    logger.info("Shutting down deploy agent")


def create_app(settings: Optional[Settings] = None, registry: Optional[TargetRegistry] = None) -> FastAPI:
    """Create FastAPI application.

    The target table is loaded here, once, so a bad targets file fails
    startup rather than the first request.
    """
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    if registry is None:
        registry = TargetRegistry.from_file(Path(settings.targets_file))

    app = FastAPI(
        title="Webhook Deploy Agent",
        version=__version__,
        description="Receives signed bundles and promotes them as releases",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.authenticator = Authenticator(
        registry,
        max_age_seconds=settings.max_signature_age_seconds,
    )
    app.state.orchestrator = ReleaseOrchestrator(
        manifest_filename=settings.manifest_filename,
        command_timeout=settings.command_timeout,
        max_bundle_size_bytes=settings.max_bundle_size_bytes,
    )

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(deploy_router, tags=["deploy"])

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


def run(settings: Optional[Settings] = None) -> None:
    """Run the application."""
    if settings is None:
        settings = Settings()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    config = uvicorn.Config(
        "deploy_agent.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        workers=settings.workers,
        reload=settings.reload,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
