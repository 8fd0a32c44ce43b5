# -*- coding: utf-8 -*-
"""Photos — API endpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..jobs.api import get_services
from ..services import Services

router = APIRouter(prefix="/api/photos", tags=["Photos"])


@router.post("/cleanup", summary="Delete stale meal photos")
def cleanup_photos(
    max_age_hours: Optional[float] = Query(default=None, ge=0, description="Defaults to NUTRILOG_PHOTO_MAX_AGE_HOURS"),
    services: Services = Depends(get_services),
) -> dict:
    report = services.cleanup_photos(max_age_hours=max_age_hours)
    return asdict(report)
