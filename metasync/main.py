"""METASYNC: FastAPI Application Entry Point.

Meta Ads insights sync service.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metasync.database import check_connection, database_status, init_db
from metasync.scheduler.jobs import start_scheduler, stop_scheduler
from metasync.api.sync_routes import router as sync_router
from metasync.api.meta_routes import router as meta_router
from metasync.connectors.meta.resilient import shared_api_client
from metasync.core.logging import get_logger

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        f"METASYNC starting ({'serverless' if IS_SERVERLESS else 'local'})"
    )
    if check_connection():
        init_db()
    else:
        logger.error("Database not reachable, sync runs will fail to store")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("METASYNC shut down")


app = FastAPI(
    title="METASYNC",
    description="Pull Meta Ads insights by breakdown, merge and aggregate them into one reporting row per storage key.",
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
app.include_router(sync_router)
app.include_router(meta_router)


@app.get("/health", tags=["System"])
def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "metasync",
        "version": "1.0.0",
        "circuit_breaker_open": shared_api_client().breaker.is_open,
    }


@app.get("/debug/db", tags=["System"])
def debug_db():
    """Debug endpoint: check database connectivity."""
    return {
        **database_status(),
        "environment": "serverless" if IS_SERVERLESS else "local",
    }
