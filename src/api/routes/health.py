"""Health and readiness endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready() -> JSONResponse:
    backend = settings.storage_backend
    db_ok = True
    if backend == "postgres":
        from src.db.database import check_db

        db_ok = await check_db()

    status_code = 200 if db_ok else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if db_ok else "degraded",
            "storage_backend": backend,
            "database": db_ok,
        },
    )
