"""Health check endpoint."""

from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Request

from sirka_agent import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Optional[str]]:
    """Liveness check; no authentication."""
    manager = getattr(request.app.state, "activation_manager", None)
    return {
        "status": "ok",
        "runtime": manager.backend.kind.value if manager else None,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
