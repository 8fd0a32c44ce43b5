# -*- coding: utf-8 -*-
"""Exception hierarchy shared by the job engine and its collaborators."""

from __future__ import annotations

from typing import Optional


class NutrilogError(Exception):
    """Base class for all project errors."""


class InvalidJobError(NutrilogError, ValueError):
    """A job submission was rejected before it was persisted."""


class JobNotFoundError(NutrilogError, KeyError):
    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


# ---- Analysis service ----


class AnalysisError(NutrilogError):
    """Failure reported by the remote analysis service."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AnalysisConnectionError(AnalysisError):
    """The service could not be reached (DNS, refused connection, dropped socket)."""


class AnalysisTimeoutError(AnalysisError):
    """The request did not complete in time."""


class AnalysisServerError(AnalysisError):
    """The service failed on its side (5xx)."""


class AnalysisRejectedError(AnalysisError):
    """The request was rejected as invalid (4xx other than 401/403)."""


class AnalysisAuthError(AnalysisError):
    """Credentials were missing or refused (401/403)."""


class MalformedResponseError(AnalysisError):
    """The response could not be parsed into a nutrition record."""


class AnalysisValidationError(AnalysisError):
    """The parsed values fall outside the accepted ranges."""


class NoFoodDetectedError(AnalysisValidationError):
    def __init__(self, message: str = "No food detected in the image") -> None:
        super().__init__(message)


# ---- Storage service ----


class StorageError(NutrilogError):
    """A nutrition record could not be written."""


class StoragePermissionDenied(StorageError):
    """The writer is not authorized to write to the health-data store."""
