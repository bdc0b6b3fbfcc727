"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the donor import routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from donor_import.api.routers import imports, jobs
from donor_import.core.config import settings
from donor_import.core.logging_config import configure_logging
from donor_import.db.session import init_db

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, settings.log_format, settings.log_third_party_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        init_db()
        logger.info("Database tables ready")
    except Exception:
        logger.exception("Failed to initialize database tables; the service cannot start")
        raise

    yield


app = FastAPI(
    title="Donor Import API",
    version="1.0.0",
    description="Import donor records from CSV and Excel files with AI-assisted column mapping",
    lifespan=lifespan,
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(jobs.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Donor Import API",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "donor-import-api",
    }
