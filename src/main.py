"""FastAPI application entry point for the experimentation engine."""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.dependencies import get_services
from src.api.middleware.error_handler import global_exception_handler
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.analysis import router as analysis_router
from src.api.routes.bandits import router as bandits_router
from src.api.routes.experiments import router as experiments_router
from src.api.routes.health import router as health_router
from src.config import settings
from src.domains.experimentation.errors import ExperimentationError
from src.domains.experimentation.guardrails import run_guardrail_loop
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "experimentation_engine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        storage_backend=settings.storage_backend,
    )

    if settings.storage_backend == "postgres":
        from src.db.database import init_db

        await init_db()

    # Periodic guardrail checks run beside the API
    stop_event = asyncio.Event()
    guardrail_task: asyncio.Task | None = None
    if settings.guardrail_loop_enabled:
        services = app.dependency_overrides.get(get_services, get_services)()
        guardrail_task = asyncio.create_task(
            run_guardrail_loop(
                services.guardrail_monitor,
                services.repository,
                services.config.guardrails.check_interval_seconds,
                stop_event,
            )
        )

    yield

    stop_event.set()
    if guardrail_task is not None:
        await guardrail_task
    logger.info("experimentation_engine_shutting_down")


app = FastAPI(
    title="Experimentation Engine",
    description="Deterministic assignment, statistical analysis, bandits and guardrails",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Domain and lookup errors map to 4xx/5xx; Exception catches the rest
app.add_exception_handler(ExperimentationError, global_exception_handler)
app.add_exception_handler(ValueError, global_exception_handler)
app.add_exception_handler(LookupError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(experiments_router)
app.include_router(analysis_router)
app.include_router(bandits_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
