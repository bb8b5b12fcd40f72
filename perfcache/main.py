"""PERFCACHE — FastAPI Application Entry Point.

Tiered metrics resolution and caching for advertising-platform data.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from perfcache.api.lifecycle_routes import router as lifecycle_router
from perfcache.api.metrics_routes import router as metrics_router
from perfcache.core.errors import StoreUnavailable
from perfcache.core.logging import get_logger
from perfcache.database import _mask_url, db_url, engine as db_engine, init_db, test_connection
from perfcache.engine.service import build_engine
from perfcache.scheduler.jobs import start_scheduler, stop_scheduler

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 PERFCACHE starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    # Test connection first
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — reads will fall through to live fetches")

    metrics_engine = build_engine(db_engine)
    app.state.engine = metrics_engine
    if not IS_SERVERLESS:
        start_scheduler(metrics_engine)
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    await metrics_engine.close()
    logger.info("PERFCACHE shut down")


app = FastAPI(
    title="PERFCACHE",
    description="Tiered resolution and caching of advertising performance metrics — hot cache, day ledger, archive and live fetch behind one query.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(metrics_router)
app.include_router(lifecycle_router)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error(f"Store unavailable on {request.url.path}: {exc}", extra={"endpoint": request.url.path})
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "perfcache",
        "version": "1.0.0",
        "database": "postgresql" if db_url.startswith("postgresql") else "sqlite",
        "database_url": _mask_url(db_url),
        "database_connected": test_connection(),
    }
