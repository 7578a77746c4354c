"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Request

from deploy_agent import __version__

router = APIRouter()


@router.get("/health", response_model=Dict[str, str])
async def health_check(request: Request) -> Dict[str, str]:
    """Simple health check endpoint."""
    registry = getattr(request.app.state, "registry", None)
    return {
        "status": "healthy",
        "version": __version__,
        "targets": str(len(registry) if registry is not None else 0),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
