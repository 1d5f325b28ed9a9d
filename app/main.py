"""Main FastAPI application entry point."""

import logging
from typing import Optional
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database.cache import CacheBackend, get_cache
from app.database.database import init_db, get_db
from app.api.sync import router as sync_router, get_sync_service, get_token_provider
from app.services.encryption_service import EncryptionService
from app.services.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Factory HR Sync",
    description="Keka attendance and employee synchronization service",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)

scheduler: Optional[SyncScheduler] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    cache: str
    message: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Validate encryption, initialize database and start the scheduler."""
    global scheduler

    # Validate encryption service (will exit if key is invalid)
    EncryptionService()
    init_db()

    if settings.scheduler_enabled:
        cache = get_cache()
        token_provider = get_token_provider(cache)
        scheduler = SyncScheduler(get_sync_service(cache, token_provider), token_provider)
        scheduler.start()
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background jobs."""
    if scheduler:
        await scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Factory HR Sync API", "version": "0.1.0"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache)
):
    """Health check endpoint.

    Checks database and cache connectivity.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "cache": "connected"
    }

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)

    if not await cache.ping():
        health_status["status"] = "unhealthy"
        health_status["cache"] = "disconnected"
        health_status.setdefault("message", "Cache ping failed")

    return HealthResponse(**health_status)
