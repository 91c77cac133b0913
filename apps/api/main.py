"""
Video Ingest API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    uploads,
    assets,
    webhooks,
    admin,
)
from services.reconciliation import run_reconciliation, sweep_expired_sessions


logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_reconciliation() -> None:
    interval_minutes = max(int(settings.RECONCILE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_reconciliation()
            repaired = sum(int(stats.get("repaired", 0) or 0) for stats in result.values())
            failed = sum(int(stats.get("failed", 0) or 0) for stats in result.values())
            if repaired or failed:
                print(f"🧹 Reconciliation tick: repaired={repaired} failed={failed}")
        except Exception as exc:
            print(f"⚠️ Reconciliation tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Ingest API...")
    validate_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        expired = await sweep_expired_sessions()
        if expired.get("repaired"):
            print(f"♻️ Expired {expired['repaired']} stale upload sessions after startup.")
    except Exception as exc:
        print(f"⚠️ Expired upload session sweep skipped: {exc}")
    reconciliation_task = None
    if int(settings.RECONCILE_INTERVAL_MINUTES) > 0:
        reconciliation_task = asyncio.create_task(_periodic_reconciliation())
        print(
            "📅 Reconciliation loop enabled "
            f"(every {int(settings.RECONCILE_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if reconciliation_task is not None:
        reconciliation_task.cancel()
        try:
            await reconciliation_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Ingest API",
    description="Chunked video uploads, asset registration and provider callback reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
app.include_router(assets.router, prefix="/assets", tags=["Assets"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Ingest API",
        "version": "0.1.0",
        "status": "running"
    }
