"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from rq import Worker

from src.api import webhooks
from src.config.settings import settings
from src.database.db import check_db_connection, init_db
from src.queue.config import get_all_queues, redis_conn
from src.utils.logging import setup_observability

VERSION = "0.1.0"

setup_observability()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    logger.info(f"Starting Sherlock review service in {settings.environment} environment")
    if settings.logfire_token:
        logger.info("Logfire observability enabled")

    logger.info("Initializing database...")
    init_db()
    check_db_connection()
    logger.info("Database initialized and connected successfully")

    yield

    logger.info("Shutting down Sherlock review service")


app = FastAPI(
    title="Sherlock Review Service",
    description="Queue-backed code review orchestration for GitHub and GitLab",
    version=VERSION,
    lifespan=lifespan,
)

if settings.logfire_token:
    import logfire

    logfire.instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)


@app.get("/health")
async def health_check() -> dict[str, str | bool | int]:
    """Health check endpoint with configuration status."""
    redis_connected = False
    queue_size = 0
    active_workers = 0
    try:
        redis_connected = bool(redis_conn.ping())
        queue_size = sum(queue.count for queue in get_all_queues())
        active_workers = len(Worker.all(connection=redis_conn))
    except Exception:
        logger.exception("Health check: failed to query Redis/queue state")

    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": VERSION,
        "github_app_configured": bool(settings.github_app_id),
        "gitlab_configured": bool(settings.gitlab_token),
        "analysis_provider": settings.ai_provider,
        "logfire_enabled": bool(settings.logfire_token),
        "webhook_secret_configured": bool(settings.github_webhook_secret),
        "redis_connected": redis_connected,
        "queue_size": queue_size,
        "active_workers": active_workers,
    }


@app.get("/database")
async def database() -> dict[str, str | bool]:
    """Database connection health check endpoint."""
    db_connected = check_db_connection()
    return {
        "database_connected": db_connected,
        "database_url": settings.database_url.split("@")[-1],  # Hide credentials
    }


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Sherlock Review Service API",
        "docs": "/docs",
        "health": "/health",
        "database": "/database",
    }
