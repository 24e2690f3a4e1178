"""
Health Check Endpoints

- liveness for process supervisors
- readiness (database) for load balancers
- resilience view of the Stripe circuit breaker
"""

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from graymall.core.config import settings
from graymall.core.database import get_db
from graymall.core.monitoring import get_circuit_breaker_status

router = APIRouter()
logger = structlog.get_logger()


@router.get("")
async def health_check():
    """Basic health check. Returns 200 if the service is running."""
    return {"status": "ok", "version": settings.APP_VERSION}


@router.get("/live")
async def liveness_check():
    return {"status": "alive", "version": settings.APP_VERSION}


@router.get("/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - the database answers and Stripe is configured."""
    checks = {"database": False, "stripe_configured": bool(settings.STRIPE_SECRET_KEY)}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))

    ready = checks["database"]
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )


@router.get("/resilience")
async def resilience_status():
    """Circuit breaker state for Stripe"""
    circuit_breakers = await get_circuit_breaker_status()
    any_open = any(cb.get("is_open", False) for cb in circuit_breakers.values())

    return {
        "status": "degraded" if any_open else "healthy",
        "circuit_breakers": circuit_breakers,
    }
