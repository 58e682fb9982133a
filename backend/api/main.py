"""
Replenishment Engine API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("api.startup", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("api.shutdown")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Demand-driven replenishment: forecasting, reorder planning and automated decisions",
    lifespan=lifespan,
)

# Import and register routers
from api.v1.routers import replenishment

app.include_router(replenishment.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
