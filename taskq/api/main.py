"""
FastAPI application entry point.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from taskq import __version__
from taskq.api.routes import health_router, tasks_router
from taskq.config import Settings, get_settings
from taskq.handlers import build_default_registry
from taskq.observability.logging import setup_logging
from taskq.observability.metrics import MetricsCollector, setup_metrics
from taskq.observability.tracing import instrument_fastapi, setup_tracing
from taskq.producer import Producer
from taskq.store import create_store
from taskq.store.base import QueueStore
from taskq.worker.main import Scheduler
from taskq.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens the queue store unless one was supplied to create_app(), and runs
    an embedded scheduler when configured to.
    """
    settings: Settings = app.state.settings
    setup_logging(settings)
    setup_tracing()

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = await create_store(settings, app.state.metrics)
        app.state.producer = Producer.from_settings(
            app.state.store,
            settings,
            registry=app.state.registry,
            metrics=app.state.metrics,
        )

    scheduler = None
    scheduler_task = None
    if settings.api_embedded_worker:
        scheduler = Scheduler.from_settings(
            app.state.store,
            app.state.registry,
            settings,
            metrics=app.state.metrics,
        )
        scheduler_task = asyncio.create_task(scheduler.start())

    logger.info("Application started")

    yield

    if scheduler is not None:
        await scheduler.stop()
        await scheduler_task
    if owns_store:
        await app.state.store.close()
    logger.info("Application shutdown")


def create_app(
    settings: Settings | None = None,
    store: QueueStore | None = None,
    registry: HandlerRegistry | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings. Defaults to get_settings().
        store: Queue store to use. Opened from settings at startup if omitted.
        registry: Handler registry. Unregistered types are rejected with 422.
        metrics: Metrics collector. Defaults to the process-wide one.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="taskq API",
        description="Distributed background task scheduler",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.settings = settings
    app.state.metrics = metrics or setup_metrics()
    app.state.registry = registry or build_default_registry(settings)
    app.state.store = store
    app.state.producer = None
    if store is not None:
        app.state.producer = Producer.from_settings(
            store,
            settings,
            registry=app.state.registry,
            metrics=app.state.metrics,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(tasks_router)

    if os.path.isdir(settings.video_static_dir):
        app.mount(
            "/video",
            StaticFiles(directory=settings.video_static_dir),
            name="video",
        )

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
