# -*- coding: utf-8 -*-
"""Jobs — retry policy: error classification and exponential backoff."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import List

import httpx
from pydantic import ValidationError

from ..errors import (
    AnalysisAuthError,
    AnalysisConnectionError,
    AnalysisRejectedError,
    AnalysisServerError,
    AnalysisTimeoutError,
    AnalysisValidationError,
    MalformedResponseError,
    NoFoodDetectedError,
)
from .models import ErrorClassification, FailureCause

_RETRYABLE_CAUSES = {
    FailureCause.connectivity,
    FailureCause.timeout,
    FailureCause.server_error,
    FailureCause.interrupted,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed error taxonomy plus a bounded exponential backoff.

    With the defaults an all-retryable job runs 4 attempts, started after
    0s, 1s, 2s and 4s.
    """

    max_attempts: int = 4
    initial_delay: float = 1.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.multiplier < 1:
            raise ValueError("initial_delay must be >= 0 and multiplier >= 1")

    def cause_of(self, error: BaseException) -> FailureCause:
        # Timeouts first: httpx.TimeoutException is also a TransportError.
        if isinstance(error, (AnalysisTimeoutError, httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return FailureCause.timeout
        if isinstance(error, (AnalysisConnectionError, httpx.TransportError, ConnectionError)):
            return FailureCause.connectivity
        if isinstance(error, AnalysisServerError):
            return FailureCause.server_error
        if isinstance(error, httpx.HTTPStatusError):
            code = error.response.status_code
            if code >= 500:
                return FailureCause.server_error
            if code in (401, 403):
                return FailureCause.unauthorized
            return FailureCause.rejected_request
        if isinstance(error, AnalysisAuthError):
            return FailureCause.unauthorized
        if isinstance(error, AnalysisRejectedError):
            return FailureCause.rejected_request
        if isinstance(error, (MalformedResponseError, json.JSONDecodeError)):
            return FailureCause.malformed_response
        if isinstance(error, NoFoodDetectedError):
            return FailureCause.no_food_detected
        if isinstance(error, (AnalysisValidationError, ValidationError, ValueError)):
            return FailureCause.validation
        return FailureCause.unexpected

    def classify(self, error: BaseException) -> ErrorClassification:
        return self.classify_cause(self.cause_of(error))

    @staticmethod
    def classify_cause(cause: FailureCause) -> ErrorClassification:
        if cause in _RETRYABLE_CAUSES:
            return ErrorClassification.retryable
        return ErrorClassification.terminal

    def backoff_delay(self, attempt_number: int) -> float:
        """Seconds to wait after failed attempt `attempt_number` (1-based)."""
        if attempt_number < 1:
            raise ValueError("attempt_number is 1-based")
        return self.initial_delay * self.multiplier ** (attempt_number - 1)

    def delay_before(self, attempt_number: int) -> float:
        """Seconds between the previous outcome and the start of `attempt_number`."""
        if attempt_number <= 1:
            return 0.0
        return self.backoff_delay(attempt_number - 1)

    def schedule(self) -> List[float]:
        return [self.delay_before(n) for n in range(1, self.max_attempts + 1)]

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
