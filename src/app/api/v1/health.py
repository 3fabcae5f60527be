"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready), and startup
(/health/startup) checks. The database is the only critical dependency;
the hosted functions and Notion are reported as configured or not.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and report optional integrations."""
    settings = get_settings()
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    checks["functions"] = "ok" if settings.FUNCTIONS_BASE_URL else "not_configured"
    checks["notion"] = "ok" if getattr(request.app.state, "notion_service", None) else "not_configured"
    checks["firecrawl"] = "ok" if settings.FIRECRAWL_API_KEY else "not_configured"

    scheduler = getattr(request.app.state, "research_scheduler", None)
    checks["research_scheduler"] = "running" if scheduler is not None and scheduler.running else "off"
    return checks


def _check_response(checks: dict, ok_status: str, bad_status: str) -> JSONResponse:
    healthy = checks.get("database") == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": ok_status if healthy else bad_status, "checks": checks},
    )


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database answers, 503 otherwise."""
    return _check_response(await _check_dependencies(request), "ready", "degraded")


@router.get("/health/startup")
async def startup_check(request: Request):
    return _check_response(await _check_dependencies(request), "started", "starting")
