"""
FastAPI application entry point for the tenancy core.

Serves the Azure Marketplace landing page, webhook and health endpoints.
Background jobs (usage metering, trial expiration) run in-process when
ENABLE_BACKGROUND_JOBS is set; otherwise run them with their CLIs.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tenancy.api.routes import marketplace
from tenancy.config.settings import get_settings
from tenancy.jobs.process_usage_metering import run_usage_metering
from tenancy.jobs.scheduler import PeriodicJob
from tenancy.jobs.trial_expiration_monitor import run_trial_check
from tenancy.platform.errors import register_error_handlers

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_background_jobs(settings) -> list[PeriodicJob]:
    return [
        PeriodicJob("usage_metering", settings.usage_metering_interval_seconds, run_usage_metering),
        PeriodicJob("trial_expiration", settings.trial_check_interval_seconds, run_trial_check),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info("Starting tenancy API", extra={"env": settings.env, "version": settings.app_version})

    if not settings.database_url:
        logger.error("DATABASE_URL is not set. Endpoints that need the database will return 503.")

    jobs: list[PeriodicJob] = []
    if settings.enable_background_jobs:
        jobs = build_background_jobs(settings)
        for job in jobs:
            job.start()
    else:
        logger.info("Background jobs disabled")

    app.state.background_jobs = jobs

    yield

    # Shutdown
    for job in jobs:
        await job.stop()
    logger.info("Shutting down tenancy API")


app = FastAPI(
    title="Tenancy API",
    description="Multi-tenant SaaS core with Azure Marketplace fulfillment",
    version=get_settings().app_version,
    lifespan=lifespan
)

register_error_handlers(app)

app.include_router(marketplace.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
