"""FastAPI application for the notetriage review API.

The lifespan builds the shared services (store, inference client, engine)
once and hangs them on app.state for the route dependencies.

Scheduled re-classification runs via APScheduler's AsyncIOScheduler on
the same event loop as uvicorn, so jobs call the engine directly.

Usage:
    from notetriage.web.app import create_app

    app = create_app()
    uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from notetriage.core.logging import get_logger

if TYPE_CHECKING:
    from notetriage.engine.reclassify import ReclassifyEngine

logger = get_logger(__name__)

_STATE_ATTRS = (
    "config",
    "store",
    "client",
    "dispatcher",
    "detector",
    "baseline",
    "candidates",
    "few_shot",
    "engine",
)


async def run_scheduled_batch(engine: ReclassifyEngine) -> None:
    """Scheduled job body: pick up config edits, then run one batch."""
    from notetriage.config import get_config, reload_config_if_changed

    try:
        if reload_config_if_changed():
            engine.update_config(get_config())
        result = await engine.run_batch()
        logger.info(
            "scheduled_reclassify_complete",
            batch_id=result.batch_id,
            executed=result.executed,
        )
    except Exception as e:
        logger.error("scheduled_reclassify_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services and start the scheduler; tear both down on exit.

    On startup:
    1. Load config
    2. Initialize database, inference client and engines
    3. Start APScheduler (when batch.schedule_enabled)

    On shutdown:
    - Stop APScheduler
    - Flush background messages and close the HTTP client
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from notetriage.config import get_config
    from notetriage.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from notetriage.services import build_services

    # 1. Load config and build services
    try:
        config = get_config()
        services = await build_services(config)
    except (ConfigLoadError, ConfigValidationError, DatabaseError) as e:
        logger.error("startup_failed", error=str(e))
        # Store None values so /api/health can still report the failure
        for name in _STATE_ATTRS:
            setattr(app.state, name, None)
        app.state.scheduler = None
        yield
        return

    for name in _STATE_ATTRS:
        setattr(app.state, name, getattr(services, name))

    # 2. Start APScheduler
    scheduler = None
    if config.batch.schedule_enabled:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            run_scheduled_batch,
            "interval",
            args=[services.engine],
            minutes=config.batch.schedule_interval_minutes,
            id="reclassify_batch",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info(
            "scheduler_started",
            interval_minutes=config.batch.schedule_interval_minutes,
        )

    app.state.scheduler = scheduler

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
    await services.aclose()


def create_app() -> FastAPI:
    """Assemble the notetriage API app.

    Returns:
        FastAPI app with the API router mounted
    """
    from notetriage.web.routes import api_router

    app = FastAPI(
        title="notetriage",
        description="Note classification review API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app
