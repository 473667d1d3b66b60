"""Deploy, restart and status endpoints."""

from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from sirka_agent.api.deps import get_audit_log, get_manager, require_agent_token
from sirka_agent.audit.log import AuditLog
from sirka_agent.core.exceptions import SiteAgentError
from sirka_agent.deploy.manager import ActivationManager
from sirka_agent.deploy.models import BackendHandle, DeploymentRequest, RestartRequest
from sirka_agent.utils.logging import bind_site_context

router = APIRouter(dependencies=[Depends(require_agent_token)])
logger = structlog.get_logger()

START_TIME = time.monotonic()


class DeployResponse(BaseModel):
    success: bool
    message: str
    domain: Optional[str]
    path: str
    runtime: str
    backend: BackendHandle


class RestartResponse(BaseModel):
    success: bool
    message: str
    siteId: str


def _failure(action: str, exc: SiteAgentError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "error": f"{action} failed",
            "type": exc.__class__.__name__,
            "message": str(exc),
            "stage": exc.stage,
            "contentChanged": exc.content_changed,
        },
    )


@router.post("/deploy", response_model=DeployResponse)
async def deploy_endpoint(payload: DeploymentRequest, manager: ActivationManager = Depends(get_manager)):
    """Deploy a site. The manager audits and counts every outcome."""
    runtime = manager.backend.kind.value
    bind_site_context(site_id=payload.siteId, backend=runtime)
    logger.info("Deploying site", site_name=payload.siteName, domain=payload.domain)

    try:
        result = await manager.deploy(payload)
    except SiteAgentError as exc:
        logger.error("Deployment failed", error=str(exc), stage=exc.stage, content_changed=exc.content_changed)
        return _failure("Deployment", exc)

    return DeployResponse(
        success=True,
        message="Deployment successful",
        domain=result.domain,
        path=result.servedPath,
        runtime=runtime,
        backend=result.backendHandle,
    )


@router.post("/restart", response_model=RestartResponse)
async def restart_endpoint(
    payload: RestartRequest,
    manager: ActivationManager = Depends(get_manager),
    audit: AuditLog = Depends(get_audit_log),
):
    runtime = manager.backend.kind.value
    bind_site_context(site_id=payload.siteId, backend=runtime)
    logger.info("Restarting site")

    try:
        await manager.restart(payload.siteId)
    except SiteAgentError as exc:
        logger.error("Restart failed", error=str(exc))
        await audit.log(action="restart", siteId=payload.siteId, status="failed", runtime=runtime, error=str(exc))
        return _failure("Restart", exc)

    await audit.log(action="restart", siteId=payload.siteId, status="success", runtime=runtime)
    return RestartResponse(success=True, message="Site restarted successfully", siteId=payload.siteId)


@router.get("/status")
async def status_endpoint(request: Request, manager: ActivationManager = Depends(get_manager)) -> Dict[str, Any]:
    try:
        sites = await manager.list_sites()
    except SiteAgentError as exc:
        logger.error("Status check failed", error=str(exc))
        return _failure("Status check", exc)

    settings = request.app.state.settings
    return {
        "status": "ok",
        "runtime": manager.backend.kind.value,
        "platform": settings.platform_url,
        "uptime": time.monotonic() - START_TIME,
        "pid": os.getpid(),
        "sites": len(sites),
        "deployedSites": [{"siteId": s} for s in sites],
    }
