# -*- coding: utf-8 -*-
"""Jobs — models, enums and attempt outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..diet.models import NutritionRecord


class JobStatus(str, Enum):
    enqueued = "enqueued"
    running = "running"
    awaiting_retry = "awaiting_retry"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.succeeded, JobStatus.failed)

    @property
    def is_dispatchable(self) -> bool:
        return self in (JobStatus.enqueued, JobStatus.awaiting_retry)


class ErrorClassification(str, Enum):
    retryable = "retryable"
    terminal = "terminal"


class LifecycleDecision(str, Enum):
    delete = "delete"
    retain = "retain"


class FailureCause(str, Enum):
    artifact_missing = "artifact_missing"
    connectivity = "connectivity"
    timeout = "timeout"
    server_error = "server_error"
    malformed_response = "malformed_response"
    rejected_request = "rejected_request"
    unauthorized = "unauthorized"
    validation = "validation"
    no_food_detected = "no_food_detected"
    permission_denied = "permission_denied"
    storage_failure = "storage_failure"
    max_attempts_exhausted = "max_attempts_exhausted"
    interrupted = "interrupted"
    unexpected = "unexpected"


class JobInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_ref: str = Field(..., description="Photo file name inside the photo directory")
    captured_at: datetime = Field(..., description="When the photo was taken")

    @field_validator("artifact_ref")
    @classmethod
    def _strip_ref(cls, value: str) -> str:
        return value.strip()


class JobConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    requires_network: bool = True


class Job(BaseModel):
    id: str
    input: JobInput
    constraints: JobConstraints = JobConstraints()
    attempt_count: int = Field(0, ge=0)
    max_attempts: int = Field(4, ge=1)
    status: JobStatus = JobStatus.enqueued
    next_run_at: Optional[float] = Field(None, description="Epoch seconds before which no attempt may start")
    last_error: Optional[str] = None
    cause: Optional[FailureCause] = None
    decision: Optional[LifecycleDecision] = None
    artifact_deleted: bool = False
    created_at: str
    updated_at: str
    finished_at: Optional[str] = None


# Attempt outcomes form a closed union; the scheduler switches over the three cases.


@dataclass(frozen=True)
class Success:
    record: NutritionRecord
    storage_id: str


@dataclass(frozen=True)
class RetryableFailure:
    cause: FailureCause
    detail: str = ""


@dataclass(frozen=True)
class TerminalFailure:
    cause: FailureCause
    detail: str = ""
    retain_artifact: bool = False


AttemptOutcome = Union[Success, RetryableFailure, TerminalFailure]


# ---- HTTP payloads ----


class EnqueueJobRequest(BaseModel):
    artifact_ref: str = Field(..., description="Photo file name already stored in the photo directory")
    captured_at: datetime
    requires_network: bool = True


class EnqueueJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    artifact_ref: str


class JobListResponse(BaseModel):
    active: List[Job]
    history: List[Job]
