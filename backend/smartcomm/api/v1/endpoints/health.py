"""
Health Check Endpoint
Provides health status for Docker health checks and monitoring
"""
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Request, status

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request) -> Dict[str, object]:
    """
    Health check endpoint for Docker and monitoring systems.

    Reports whether the model fallback is available.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "smartcomm",
        "llm_fallback": getattr(request.app.state, "llm_provider", None) is not None,
    }
