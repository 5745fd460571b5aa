"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from batchdispatch.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, dispatch mode, and system info."""
    missing = settings.missing_credentials()
    credentials_ok = settings.compute_dispatch_mode == "local" or not missing

    return {
        "status": "healthy" if credentials_ok else "degraded",
        "dispatch_mode": settings.compute_dispatch_mode,
        "credentials_configured": not missing,
        "missing_credentials": missing if settings.compute_dispatch_mode == "azure" else [],
        "pool_id": settings.pool_id,
        "job_id": settings.job_id,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
