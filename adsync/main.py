"""adsync — FastAPI Application Entry Point.

Meta Ads synchronization service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from adsync.config import settings
from adsync.connectors.meta.auth import TokenManager
from adsync.database import engine, init_db, test_connection
from adsync.scheduler.jobs import SyncScheduler
from adsync.sync.engine import SyncEngine
from adsync.sync.service import SyncService
from adsync.api.meta_routes import router as meta_router
from adsync.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 adsync starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    if test_connection():
        init_db()
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")

    # One instance of each service for the whole process
    token_manager = TokenManager(engine)
    sync_service = SyncService(SyncEngine(engine, token_manager))
    scheduler = SyncScheduler(sync_service, engine)
    app.state.db_engine = engine
    app.state.token_manager = token_manager
    app.state.sync_service = sync_service
    app.state.scheduler = scheduler

    await sync_service.start()
    if not IS_SERVERLESS:
        scheduler.start()
    yield
    if not IS_SERVERLESS:
        scheduler.stop()
    await sync_service.stop()
    await token_manager.close()
    logger.info("adsync shut down")


app = FastAPI(
    title="adsync",
    description="Meta Ads ingestion — OAuth connect, consent-gated sync of the account hierarchy and daily insights.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url] if settings.app_url else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(meta_router)


@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """Liveness plus whether the sync workers are up."""
    service = getattr(request.app.state, "sync_service", None)
    return {
        "status": "healthy",
        "service": "adsync",
        "version": "1.0.0",
        "sync_workers_running": bool(service and service.running),
    }
