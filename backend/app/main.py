"""
Fitbit Research Sync API
========================
FastAPI application entry point. Mount routers here.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.routers import fitbit, webhooks

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)

app = FastAPI(
    title="Fitbit Research Sync API",
    description="Participant Fitbit connection and health data sync",
    version="0.1.0",
    docs_url="/api/docs" if settings.environment != "production" else None,
    redoc_url="/api/redoc" if settings.environment != "production" else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(fitbit.router)
app.include_router(webhooks.router)


@app.get("/api/v1/health")
async def health_check() -> dict:
    return {"status": "ok", "service": "fitbit-sync-api"}
