import asyncio
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from loguru import logger

from ridesync.api.backfill import router as backfill_router
from ridesync.api.data_source import router as data_source_router
from ridesync.config.settings import settings
from ridesync.core.logger import setup_logger
from ridesync.db.models import Base
from ridesync.db.session import get_engine
from ridesync.ingestion.backfill_history import sweep_backfill_requests
from ridesync.webhooks.garmin import router as garmin_webhook_router
from ridesync.webhooks.strava import router as strava_webhook_router

setup_logger()


def _run_backfill_sweep() -> None:
    try:
        sweep_backfill_requests()
    except Exception:
        logger.exception("[SCHEDULER] Backfill sweep failed")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create tables and run the backfill completion sweep while the app is up.

    Note: FastAPI requires async for lifespan context manager,
    even if no await operations are used.
    """
    logger.info("Ensuring database tables exist")
    Base.metadata.create_all(bind=get_engine())

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _run_backfill_sweep,
        trigger=IntervalTrigger(minutes=settings.backfill_sweep_interval_minutes),
        id="backfill_sweep",
        name="Garmin Backfill Completion Sweep",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"[SCHEDULER] Started backfill sweep (every {settings.backfill_sweep_interval_minutes} minutes)")

    await asyncio.sleep(0)
    yield

    scheduler.shutdown()
    logger.info("[SCHEDULER] Stopped backfill sweep")


app = FastAPI(title="RideSync", lifespan=lifespan)

app.include_router(strava_webhook_router)
app.include_router(garmin_webhook_router)
app.include_router(backfill_router)
app.include_router(data_source_router)

logger.info("FastAPI application initialized")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.debug(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
    return response
