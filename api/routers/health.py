# WORKFLOW: Health check endpoints for monitoring and operational status.
# Used by: Load balancers, monitoring systems, operational dashboards
# Endpoints:
# 1. /healthz - Basic health check (always returns healthy)
# 2. /readyz - Readiness check with database and storage dependencies
# 3. /livez - Liveness check for Kubernetes probes
#
# Health flow: Health check request -> Service status check -> Health response
# Readiness flow: Readiness check -> Database/storage connectivity -> Ready/Not ready

from fastapi import APIRouter
import logging
from datetime import datetime

from db.session import check_db_connection
from core.config import settings
from storage import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def health_check():
    """
    Basic health check endpoint.

    Returns:
        Health status of the API
    """
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.version,
        "environment": settings.environment
    }


@router.get("/readyz")
async def readiness_check():
    """
    Readiness check endpoint.

    Checks if the service is ready to handle requests by verifying:
    - Database connection
    - Object storage backend configuration

    Returns:
        Readiness status with detailed checks
    """
    checks = {
        "database": check_db_connection(),
        "storage": False,
    }

    try:
        get_storage()
        checks["storage"] = True
    except Exception as e:
        logger.error(f"Storage health check failed: {e}")

    is_ready = all(checks.values())

    return {
        "status": "ready" if is_ready else "not_ready",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks,
        "version": settings.version
    }


@router.get("/livez")
async def liveness_check():
    """
    Liveness check endpoint.

    Simple check to determine if the service is alive.
    Used by Kubernetes liveness probes.

    Returns:
        Liveness status
    """
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat()
    }
