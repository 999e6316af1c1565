"""Entry points for running the FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from .api.routes import router as api_router
from .config import Settings, get_settings
from .db.session import Database
from .db.store import ResultStore
from .jobs.queue import JobQueue
from .logging_utils import configure_logging
from .monitoring.metrics import metrics_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    from .worker.celery_app import dispatch_scrape

    settings: Settings = app.state.settings
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    database = Database(settings.database_url)
    app.state.job_queue = JobQueue(redis, dispatch_scrape, settings)
    app.state.result_store = ResultStore(database)
    logger.info("Starting Stripe Metrics Service", extra={"environment": settings.environment})
    try:
        yield
    finally:
        await database.dispose()
        await redis.aclose()
        logger.info("Stopped Stripe Metrics Service")


def create_app(settings: Optional[Settings] = None, *, manage_resources: bool = True) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_file)

    app = FastAPI(
        title="Stripe Metrics Service",
        version="0.1.0",
        lifespan=_lifespan if manage_resources else None,
    )
    app.state.settings = settings
    app.include_router(api_router, prefix="/api")

    if settings.enable_metrics:
        app.include_router(metrics_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"]
    )

    return app


__all__ = ["create_app"]
