# -*- coding: utf-8 -*-
"""Jobs — worker executor: one analysis + save attempt for one job."""

from __future__ import annotations

import logging
import time

from ..errors import StoragePermissionDenied
from .contracts import AnalysisService, FileManager, StorageService
from .models import (
    AttemptOutcome,
    ErrorClassification,
    FailureCause,
    Job,
    RetryableFailure,
    Success,
    TerminalFailure,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class WorkerExecutor:
    """Runs a single attempt and reports it as an `AttemptOutcome`.

    The executor never retries and never persists job state; the scheduler
    counts the attempt before calling `execute()` and records the outcome after.
    Nothing raised by a collaborator escapes `execute()`.
    """

    def __init__(
        self,
        *,
        analysis: AnalysisService,
        storage: StorageService,
        files: FileManager,
        policy: RetryPolicy,
    ) -> None:
        self._analysis = analysis
        self._storage = storage
        self._files = files
        self._policy = policy

    async def execute(self, job: Job) -> AttemptOutcome:
        started = time.monotonic()
        ref = job.input.artifact_ref
        logger.debug(
            "Starting meal analysis (attempt %s/%s): job=%s artifact=%s captured_at=%s",
            job.attempt_count,
            job.max_attempts,
            job.id,
            ref,
            job.input.captured_at.isoformat(),
        )
        try:
            return await self._run(job, started)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Unexpected error in worker: job=%s artifact=%s captured_at=%s attempt=%s/%s: %s",
                job.id,
                ref,
                job.input.captured_at.isoformat(),
                job.attempt_count,
                job.max_attempts,
                exc,
                exc_info=True,
            )
            return TerminalFailure(FailureCause.unexpected, f"{type(exc).__name__}: {exc}")

    async def _run(self, job: Job, started: float) -> AttemptOutcome:
        ref = job.input.artifact_ref
        if not self._files.exists(ref):
            logger.error("Photo missing, skipping analysis: job=%s artifact=%s", job.id, ref)
            return TerminalFailure(FailureCause.artifact_missing, f"Artifact not found: {ref}")

        try:
            record = await self._analysis.analyze(ref)
        except Exception as exc:  # noqa: BLE001
            cause = self._policy.cause_of(exc)
            detail = f"{type(exc).__name__}: {exc}"
            if self._policy.classify_cause(cause) is ErrorClassification.retryable:
                logger.warning(
                    "Retryable analysis error (attempt %s/%s): job=%s artifact=%s cause=%s: %s",
                    job.attempt_count,
                    job.max_attempts,
                    job.id,
                    ref,
                    cause.value,
                    exc,
                )
                return RetryableFailure(cause, detail)
            logger.error(
                "Non-retryable analysis error: job=%s artifact=%s attempt=%s cause=%s: %s",
                job.id,
                ref,
                job.attempt_count,
                cause.value,
                exc,
            )
            return TerminalFailure(cause, detail)

        api_elapsed = time.monotonic() - started
        logger.info(
            "Analysis succeeded in %.0fms: job=%s %s kcal, %r",
            api_elapsed * 1000,
            job.id,
            record.calories,
            record.description,
        )

        try:
            storage_id = await self._storage.save(record, job.input.captured_at)
        except StoragePermissionDenied as exc:
            logger.error(
                "Storage permission denied, keeping photo for manual review: job=%s artifact=%s: %s",
                job.id,
                ref,
                exc,
            )
            return TerminalFailure(FailureCause.permission_denied, str(exc), retain_artifact=True)
        except Exception as exc:  # noqa: BLE001
            # Analysis already succeeded; storage failures go to review instead of retry.
            logger.error(
                "Storage failed after analysis: job=%s artifact=%s attempt=%s: %s",
                job.id,
                ref,
                job.attempt_count,
                exc,
                exc_info=True,
            )
            return TerminalFailure(FailureCause.storage_failure, f"{type(exc).__name__}: {exc}")

        total = time.monotonic() - started
        logger.info(
            "Processing completed in %.0fms (analysis %.0fms): job=%s record=%s",
            total * 1000,
            api_elapsed * 1000,
            job.id,
            storage_id,
        )
        return Success(record, storage_id)
