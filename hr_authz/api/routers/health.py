"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends

from ...config import settings
from ...core.engine import AuthorizationEngine
from ..dependencies import get_authz_engine

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(engine: AuthorizationEngine = Depends(get_authz_engine)):
    """
    Health check endpoint.

    Returns service status and basic info.
    """
    return {
        "status": "healthy",
        "service": settings.SERVICE_NAME,
        "environment": settings.ENVIRONMENT,
        "rule_store": engine.store.name,
    }


@router.get("/ready")
async def readiness_check(engine: AuthorizationEngine = Depends(get_authz_engine)):
    """
    Readiness check for container orchestration.

    Ready once a rule snapshot has been loaded.
    """
    snapshot = engine.snapshots.current
    checks = {
        "snapshot_loaded": snapshot.loaded,
        "watching": engine.snapshots.watching,
    }
    return {
        "ready": snapshot.loaded,
        "snapshot_version": snapshot.version,
        "checks": checks,
    }
