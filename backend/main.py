"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import holdings, kite, sync
from config import settings
from database import init_db
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables on startup."""
    init_db()
    logger.info("Holdings service started (%s)", settings.ENVIRONMENT)
    yield


app = FastAPI(
    title="Holdings Service",
    description="Zerodha Kite sessions and holdings ingestion",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(kite.router)
app.include_router(holdings.router)
app.include_router(sync.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
