"""Main entry point for the Sirka site agent."""

import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from sirka_agent import __version__
from sirka_agent.api.deploy import router as deploy_router
from sirka_agent.api.health import router as health_router
from sirka_agent.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from sirka_agent.audit.log import AuditLog
from sirka_agent.auth.token_verifier import TokenCache, TokenVerifier
from sirka_agent.backends.base import RuntimeBackend
from sirka_agent.backends.detect import select_backend
from sirka_agent.core.config import Settings
from sirka_agent.deploy.fetch import ArtifactSource
from sirka_agent.deploy.manager import ActivationManager
from sirka_agent.deploy.models import ActivationPolicy
from sirka_agent.deploy.stager import ArchiveStager
from sirka_agent.utils.logging import setup_logging

logger = structlog.get_logger()


def build_manager(
    settings: Settings,
    backend: RuntimeBackend,
    audit_log: Optional[AuditLog] = None,
) -> ActivationManager:
    return ActivationManager(
        Path(settings.deploy_path),
        backend,
        source=ArtifactSource(
            timeout_sec=settings.fetch_timeout_seconds,
            max_size_bytes=settings.max_artifact_size_bytes,
        ),
        stager=ArchiveStager(max_extracted_bytes=settings.max_extracted_size_bytes),
        default_policy=ActivationPolicy(settings.activation_policy),
        site_owner=settings.site_owner,
        audit_log=audit_log,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Sirka agent", version=__version__)
    settings: Settings = app.state.settings

    # Backend is chosen once for the lifetime of the process
    backend = app.state.backend
    if backend is None:
        try:
            backend = await select_backend(settings)
        except Exception:
            logger.exception("Failed to initialize agent runtime")
            raise
    app.state.activation_manager = build_manager(settings, backend, app.state.audit_log)
    logger.info(
        "Agent initialized",
        runtime=backend.kind.value,
        deploy_path=settings.deploy_path,
        policy=settings.activation_policy,
    )

    yield

    logger.info("Shutting down Sirka agent")


def create_app(settings: Optional[Settings] = None, backend: Optional[RuntimeBackend] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Sirka Site Agent",
        version=__version__,
        description="Deploys packaged static sites onto this host",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.backend = backend
    app.state.activation_manager = None
    app.state.audit_log = AuditLog(Path(settings.audit_log_path))
    app.state.token_verifier = TokenVerifier(
        platform_url=settings.platform_url,
        static_token=settings.agent_token,
        cache=TokenCache(ttl=settings.token_cache_ttl_seconds),
    )

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(deploy_router, tags=["deploy"])

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


def run():
    """Run the application."""
    settings = Settings()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    config = uvicorn.Config(
        "sirka_agent.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.agent_port,
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
