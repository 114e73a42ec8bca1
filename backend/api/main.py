"""
SizeOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("SizeOps API starting up", version=settings.app_version, env=settings.app_env)
    yield
    logger.info("SizeOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Size-curve health, financial impact and store transfer intelligence",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import engine_runs, size_health, transfers

app.include_router(size_health.router)
app.include_router(transfers.router)
app.include_router(engine_runs.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
