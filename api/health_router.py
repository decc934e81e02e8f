"""
Health and Monitoring Router.

Public, unauthenticated endpoints for health checks and monitoring of the
Challenge Engagement API.

Endpoints Provided:
- `/healthcheck`: A basic, lightweight health check to confirm that the service
  is running.
- `/monitoring/ping`: A simple ping endpoint for basic connectivity testing.
- `/monitoring/detailed`: A health check that verifies the database and
  reports realtime subscription state.

Architectural Design:
- Public Access: none of these endpoints require an API key, so automated
  checks (Kubernetes, uptime checkers) can call them.
- Graceful Degradation: the detailed check reports each component on its own
  and marks the service "degraded" rather than failing outright when the
  database is unreachable.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from core.database import get_database_info, health_check as database_health_check

from .dependencies import get_realtime_reconciler

logger = logging.getLogger(__name__)

SERVICE_NAME = "Challenge Engagement API"
VERSION = "1.0.0"

# Create router without dependencies - no prefix to avoid conflicts
health_router = APIRouter(tags=["Health & Monitoring"])

# Separate monitoring router for additional endpoints
monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")

    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    """Simple ping endpoint for connectivity testing"""
    logger.debug("Ping requested")
    return {"message": "pong", "timestamp": _now(), "version": VERSION}


@monitoring_router.get("/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")

    health_status = {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
        "components": {},
    }

    try:
        db_info = await get_database_info()
        db_tables = await database_health_check()
        healthy = db_info["connection_healthy"] and db_tables["status"] == "healthy"
        health_status["components"]["database"] = {
            "status": "healthy" if healthy else "unhealthy",
            "info": db_info,
            "tables": db_tables,
        }
        if not healthy:
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "error": str(e),
        }
        health_status["status"] = "degraded"

    health_status["components"]["realtime"] = {
        "status": "healthy",
        "stats": get_realtime_reconciler().get_stats(),
    }

    return health_status
