# -*- coding: utf-8 -*-
"""FastAPI app factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings as default_settings
from .diet.api import router as meals_router
from .jobs.api import router as jobs_router
from .photos.api import router as photos_router
from .services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the job scheduler and the periodic photo sweep; stop both on shutdown."""
    services: Services = app.state.services
    await services.scheduler.start()
    sweeper: Optional[asyncio.Task] = None
    interval_hours = services.settings.photo_cleanup_interval_hours
    if interval_hours > 0:
        sweeper = asyncio.create_task(services.sweep_photos_periodically(interval_hours * 3600))
    logger.info("Startup complete - job scheduler running, photo sweep every %sh.", interval_hours)
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        await services.scheduler.stop()
        logger.info("Shutdown complete.")


def create_app(cfg: Optional[Settings] = None, *, services: Optional[Services] = None) -> FastAPI:
    cfg = cfg or default_settings
    app = FastAPI(
        title="Nutrilog",
        description="Background meal-photo analysis with retries and photo lifecycle management.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services or build_services(cfg)

    app.include_router(meals_router)
    app.include_router(jobs_router)
    app.include_router(photos_router)

    @app.get("/api/health")
    def health() -> dict:
        svc: Services = app.state.services
        return {
            "ok": True,
            "network": svc.network.is_connected(),
            "active_jobs": len(svc.store.list_active()),
        }

    return app
