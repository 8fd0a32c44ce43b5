# -*- coding: utf-8 -*-
"""Diet — API endpoints: meal capture and saved nutrition entries."""

from __future__ import annotations

import base64
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from ..errors import InvalidJobError
from ..jobs.api import get_services
from ..jobs.models import EnqueueJobResponse, JobInput
from ..services import Services
from .models import MealCaptureRequest, NutritionEntriesResponse, NutritionSummary

router = APIRouter(prefix="/api/meals", tags=["Meals"])

_SUFFIX_BY_MIME = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/heic": ".heic",
}


def _decode_image_or_400(image_base64: str, max_bytes: int) -> bytes:
    try:
        data = base64.b64decode(image_base64, validate=True)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Invalid base64 image: {exc}") from exc
    if not data:
        raise HTTPException(status_code=400, detail="Empty image")
    if len(data) > max_bytes:
        raise HTTPException(status_code=400, detail=f"Image too large: {len(data)} bytes > {max_bytes}")
    return data


@router.post("/capture", response_model=EnqueueJobResponse, summary="Store a meal photo and queue its analysis")
def capture_meal(request: MealCaptureRequest, services: Services = Depends(get_services)):
    image_bytes = _decode_image_or_400(request.image_base64, max_bytes=services.settings.max_image_bytes)
    suffix = _SUFFIX_BY_MIME.get(request.image_mime.lower(), ".jpg")
    try:
        ref = services.photos.save_photo(image_bytes, suffix=suffix)
    except OSError as exc:
        raise HTTPException(status_code=500, detail=f"Failed to store photo: {exc}") from exc

    captured_at = request.captured_at or datetime.now(timezone.utc)
    try:
        job_id = services.scheduler.enqueue(JobInput(artifact_ref=ref, captured_at=captured_at))
    except InvalidJobError as exc:
        services.photos.delete(ref)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job = services.scheduler.get(job_id)
    return EnqueueJobResponse(job_id=job_id, status=job.status, artifact_ref=ref)


@router.get("/entries", response_model=NutritionEntriesResponse, summary="List saved nutrition entries")
def list_entries(
    start: str | None = Query(default=None, description="YYYY-MM-DD"),
    end: str | None = Query(default=None, description="YYYY-MM-DD"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
):
    entries = services.entries.list_entries(start=start, end=end)
    sliced = entries[offset : offset + limit]
    return NutritionEntriesResponse(count=len(entries), entries=sliced)


@router.get("/summary", response_model=NutritionSummary, summary="Daily nutrition totals")
def summary(
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    services: Services = Depends(get_services),
):
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return services.entries.daily_summary(start=start, end=end)
