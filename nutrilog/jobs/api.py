# -*- coding: utf-8 -*-
"""Jobs — API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..errors import InvalidJobError, JobNotFoundError
from ..services import Services
from .models import EnqueueJobRequest, EnqueueJobResponse, Job, JobConstraints, JobInput, JobListResponse

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("", response_model=EnqueueJobResponse, summary="Enqueue analysis of a stored photo")
def enqueue_job(request: EnqueueJobRequest, services: Services = Depends(get_services)):
    try:
        job_id = services.scheduler.enqueue(
            JobInput(artifact_ref=request.artifact_ref, captured_at=request.captured_at),
            JobConstraints(requires_network=request.requires_network),
        )
    except InvalidJobError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job = services.scheduler.get(job_id)
    return EnqueueJobResponse(job_id=job_id, status=job.status, artifact_ref=job.input.artifact_ref)


@router.get("", response_model=JobListResponse, summary="Active and finished jobs")
def list_jobs(
    limit: int = Query(default=50, ge=1, le=500, description="Max history rows"),
    services: Services = Depends(get_services),
):
    return JobListResponse(
        active=services.scheduler.list_active(),
        history=services.scheduler.list_history(limit),
    )


@router.get("/{job_id}", response_model=Job, summary="Job status")
def get_job(job_id: str, services: Services = Depends(get_services)):
    try:
        return services.scheduler.get(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
