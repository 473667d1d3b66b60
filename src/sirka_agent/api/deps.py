"""Request-scoped accessors for components held on ``app.state``."""

from __future__ import annotations

import structlog
from fastapi import Header, HTTPException, Request

from sirka_agent.audit.log import AuditLog
from sirka_agent.auth.token_verifier import TokenVerifier
from sirka_agent.deploy.manager import ActivationManager

logger = structlog.get_logger()


def get_manager(request: Request) -> ActivationManager:
    manager = getattr(request.app.state, "activation_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Agent runtime not initialized")
    return manager


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit_log


async def require_agent_token(
    request: Request,
    x_agent_token: str | None = Header(default=None, alias="X-Agent-Token"),
) -> None:
    verifier: TokenVerifier = request.app.state.token_verifier
    if not verifier.enabled:
        return  # if not configured, skip auth for local dev
    client = request.client.host if request.client else None
    if not x_agent_token:
        logger.warning("Unauthorized request: missing token", ip=client, path=request.url.path)
        raise HTTPException(status_code=401, detail="Missing X-Agent-Token header")
    if not await verifier.verify(x_agent_token):
        logger.warning("Unauthorized request: invalid token", ip=client, path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid or expired token")
