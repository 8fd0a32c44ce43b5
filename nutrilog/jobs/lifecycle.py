# -*- coding: utf-8 -*-
"""Jobs — resource lifecycle: decide whether a finished job's photo is deleted or kept."""

from __future__ import annotations

import logging

from .contracts import FileManager
from .models import (
    AttemptOutcome,
    Job,
    JobStatus,
    LifecycleDecision,
    RetryableFailure,
    Success,
    TerminalFailure,
)
from .storage import JobStore

logger = logging.getLogger(__name__)


def decide(outcome: AttemptOutcome) -> LifecycleDecision:
    if isinstance(outcome, Success):
        return LifecycleDecision.delete
    if isinstance(outcome, TerminalFailure):
        return LifecycleDecision.retain if outcome.retain_artifact else LifecycleDecision.delete
    if isinstance(outcome, RetryableFailure):
        raise ValueError("A retryable outcome has no lifecycle decision")
    raise TypeError(f"Unknown attempt outcome: {outcome!r}")


class ResourceLifecycleManager:
    """Applies the decision for a finished job exactly once.

    The decision is committed to the store before the photo is touched, so a
    crash between the two steps is repaired by re-running `apply()` on restart.
    """

    def __init__(self, store: JobStore, files: FileManager) -> None:
        self._store = store
        self._files = files

    def apply(self, job: Job, outcome: AttemptOutcome) -> Job:
        decision = decide(outcome)
        if isinstance(outcome, Success):
            recorded = self._store.record_decision(
                job.id,
                status=JobStatus.succeeded,
                decision=decision,
                cause=None,
                detail=None,
            )
        else:
            recorded = self._store.record_decision(
                job.id,
                status=JobStatus.failed,
                decision=decision,
                cause=outcome.cause,
                detail=outcome.detail or None,
            )
        return self.cleanup(recorded)

    def cleanup(self, job: Job) -> Job:
        """Carry out an already-recorded decision; safe to call repeatedly."""
        ref = job.input.artifact_ref
        if job.decision is LifecycleDecision.retain:
            logger.warning(
                "Photo retained for manual review: job=%s artifact=%s cause=%s",
                job.id,
                ref,
                job.cause.value if job.cause else None,
            )
            return job
        if job.decision is not LifecycleDecision.delete or job.artifact_deleted:
            return job

        try:
            removed = self._files.delete(ref)
        except OSError as exc:
            # Left unflagged; the stale photo sweep picks it up later.
            logger.error("Failed to delete photo: job=%s artifact=%s: %s", job.id, ref, exc)
            return job
        if not removed:
            logger.warning("Photo was already gone at cleanup: job=%s artifact=%s", job.id, ref)
        if self._store.mark_artifact_deleted(job.id):
            logger.info("Photo cleaned up: job=%s artifact=%s", job.id, ref)
            job = job.model_copy(update={"artifact_deleted": True})
        return job
