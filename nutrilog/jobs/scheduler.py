# -*- coding: utf-8 -*-
"""Jobs — scheduler: enqueue, dispatch, retry timers and restart recovery."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from ..errors import InvalidJobError, JobNotFoundError
from ..network import NetworkMonitor
from .contracts import FileManager
from .executor import WorkerExecutor
from .lifecycle import ResourceLifecycleManager
from .models import (
    AttemptOutcome,
    FailureCause,
    Job,
    JobConstraints,
    JobInput,
    JobStatus,
    RetryableFailure,
    TerminalFailure,
)
from .retry import RetryPolicy
from .storage import JobStore

logger = logging.getLogger(__name__)

JobListener = Callable[[Job], None]

# Seconds before re-trying a failed write of an attempt outcome.
OUTCOME_RETRY_DELAY = 0.5


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobScheduler:
    """Owns every job state transition.

    Jobs become eligible on enqueue, when a retry timer fires, when the network
    comes back, and on a periodic safety poll. Each dispatcher pass first
    re-probes connectivity, so an offline host keeps network-bound jobs
    queued. Each eligible job gets one attempt at a time; at most
    `concurrency` attempts run in parallel.

    A store error while recording an outcome does not strand the job in
    `running`: the write is retried every `OUTCOME_RETRY_DELAY` seconds.
    """

    def __init__(
        self,
        store: JobStore,
        executor: WorkerExecutor,
        policy: RetryPolicy,
        lifecycle: ResourceLifecycleManager,
        *,
        network: Optional[NetworkMonitor] = None,
        files: Optional[FileManager] = None,
        concurrency: int = 2,
        attempt_timeout: Optional[float] = 60.0,
        poll_interval: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._store = store
        self._executor = executor
        self._policy = policy
        self._lifecycle = lifecycle
        self._network = network
        self._files = files
        self._concurrency = concurrency
        self._attempt_timeout = attempt_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

        self._listeners: List[JobListener] = []
        self._in_flight: Set[str] = set()
        self._guard: Optional[asyncio.Lock] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._timers: Dict[str, asyncio.Task] = {}
        self._running = False

    # ---- public API ----

    def enqueue(self, job_input: JobInput, constraints: Optional[JobConstraints] = None) -> str:
        """Persist a new job and return its id. Safe to call from any thread."""
        ref = job_input.artifact_ref
        if not ref:
            raise InvalidJobError("artifact_ref must not be empty")
        if self._files is not None and not self._files.exists(ref):
            raise InvalidJobError(f"Artifact not found: {ref}")

        now = _utc_now()
        job = Job(
            id=str(uuid4()),
            input=job_input,
            constraints=constraints or JobConstraints(),
            max_attempts=self._policy.max_attempts,
            created_at=now,
            updated_at=now,
        )
        self._store.enqueue(job)
        logger.info(
            "Job enqueued: job=%s artifact=%s captured_at=%s requires_network=%s",
            job.id,
            ref,
            job_input.captured_at.isoformat(),
            job.constraints.requires_network,
        )
        self._wake()
        return job.id

    def get(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_active(self) -> List[Job]:
        return self._store.list_active()

    def list_history(self, limit: int = 50) -> List[Job]:
        return self._store.list_history(limit)

    def add_listener(self, callback: JobListener) -> None:
        """Register a callback invoked with the final job once it leaves the queue."""
        self._listeners.append(callback)

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def start(self) -> None:
        if self._running:
            return
        self._ensure_primitives()
        self._running = True
        await self.recover()
        if self._network is not None:
            self._network.add_listener(self._on_network_change)
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        logger.info(
            "Job scheduler started: concurrency=%s attempt_timeout=%s poll_interval=%s",
            self._concurrency,
            self._attempt_timeout,
            self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop dispatching and let running attempts finish. Pending retries stay persisted."""
        if not self._running:
            return
        self._running = False
        if self._network is not None:
            self._network.remove_listener(self._on_network_change)
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Job scheduler stopped")

    async def drain(self) -> None:
        """Wait until no attempt is running and no retry timer is pending."""
        while self._tasks or self._timers:
            pending = list(self._tasks) + list(self._timers.values())
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispatch_ready(self) -> int:
        """Start an attempt for every due job whose constraints hold."""
        self._ensure_primitives()
        started = 0
        for job in self._store.next_ready(self._clock()):
            if not self._constraints_met(job):
                logger.debug("Job waiting for network: job=%s", job.id)
                continue
            if job.id in self._in_flight:
                continue
            self._spawn(self._run_dispatch(job.id))
            started += 1
        return started

    async def dispatch(self, job_id: str) -> Optional[AttemptOutcome]:
        """Run one attempt for `job_id` now if it is due; None when nothing ran."""
        self._ensure_primitives()
        async with self._guard:
            if job_id in self._in_flight:
                logger.debug("Job already in flight, skipping dispatch: job=%s", job_id)
                return None
            self._in_flight.add(job_id)
        try:
            async with self._semaphore:
                job = self._store.get(job_id)
                if job is None or not job.status.is_dispatchable:
                    return None
                if job.next_run_at is not None and job.next_run_at > self._clock():
                    return None
                if not self._constraints_met(job):
                    logger.debug("Job waiting for network: job=%s", job_id)
                    return None
                job = self._store.mark_attempt(job_id)
                if job is None:
                    return None
                outcome = await self._attempt(job)
                try:
                    self._apply_outcome(job, outcome)
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to record attempt outcome, retrying: job=%s", job_id)
                    self._settle_later(job_id, outcome)
                return outcome
        finally:
            async with self._guard:
                self._in_flight.discard(job_id)

    async def recover(self) -> int:
        """Bring jobs left over from a previous process back into the state machine."""
        self._ensure_primitives()
        recovered = 0
        interrupted = RetryableFailure(FailureCause.interrupted, "Attempt interrupted by restart")
        for job in self._store.list_active():
            if job.decision is not None:
                logger.info("Finishing cleanup interrupted by restart: job=%s decision=%s", job.id, job.decision.value)
            elif job.status is JobStatus.running:
                logger.warning(
                    "Attempt interrupted by restart: job=%s artifact=%s attempt=%s/%s",
                    job.id,
                    job.input.artifact_ref,
                    job.attempt_count,
                    job.max_attempts,
                )
            elif job.status is not JobStatus.awaiting_retry:
                continue
            self._settle(job, interrupted)
            recovered += 1
        if recovered:
            logger.info("Recovered %d job(s) from the store", recovered)
        return recovered

    # ---- internals ----

    def _ensure_primitives(self) -> None:
        if self._guard is None:
            self._loop = asyncio.get_running_loop()
            self._guard = asyncio.Lock()
            self._semaphore = asyncio.Semaphore(self._concurrency)
            self._wakeup = asyncio.Event()

    def _wake(self) -> None:
        if self._loop is None or self._wakeup is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wakeup.set)

    def _on_network_change(self, connected: bool) -> None:
        if connected:
            self._wake()

    def _constraints_met(self, job: Job) -> bool:
        if not job.constraints.requires_network or self._network is None:
            return True
        return self._network.is_connected()

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_dispatch(self, job_id: str) -> None:
        try:
            await self.dispatch(job_id)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch failed: job=%s", job_id)

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            try:
                if self._network is not None:
                    await self._network.probe()
                await self.dispatch_ready()
            except Exception:  # noqa: BLE001
                logger.exception("Dispatcher pass failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _attempt(self, job: Job) -> AttemptOutcome:
        try:
            if self._attempt_timeout is None:
                return await self._executor.execute(job)
            return await asyncio.wait_for(self._executor.execute(job), timeout=self._attempt_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Attempt timed out after %ss: job=%s artifact=%s attempt=%s/%s",
                self._attempt_timeout,
                job.id,
                job.input.artifact_ref,
                job.attempt_count,
                job.max_attempts,
            )
            return RetryableFailure(FailureCause.timeout, f"Attempt exceeded {self._attempt_timeout}s")

    def _apply_outcome(self, job: Job, outcome: AttemptOutcome) -> None:
        if isinstance(outcome, RetryableFailure):
            if job.attempt_count >= job.max_attempts:
                outcome = TerminalFailure(
                    FailureCause.max_attempts_exhausted,
                    f"{outcome.cause.value}: {outcome.detail}" if outcome.detail else outcome.cause.value,
                )
            else:
                self._retry_later(job, outcome)
                return
        self._finalize(job, outcome)

    def _retry_later(self, job: Job, outcome: RetryableFailure) -> None:
        delay = self._policy.backoff_delay(job.attempt_count)
        self._store.mark_awaiting_retry(
            job.id,
            next_run_at=self._clock() + delay,
            cause=outcome.cause,
            detail=outcome.detail,
        )
        logger.info(
            "Retry scheduled in %.1fs: job=%s attempt=%s/%s cause=%s",
            delay,
            job.id,
            job.attempt_count,
            job.max_attempts,
            outcome.cause.value,
        )
        self._arm_timer(job.id, delay)

    def _finalize(self, job: Job, outcome: AttemptOutcome) -> None:
        finished = self._lifecycle.apply(job, outcome)
        if isinstance(outcome, TerminalFailure):
            logger.error(
                "Job failed permanently: job=%s artifact=%s captured_at=%s attempts=%s/%s cause=%s decision=%s: %s",
                job.id,
                job.input.artifact_ref,
                job.input.captured_at.isoformat(),
                job.attempt_count,
                job.max_attempts,
                outcome.cause.value,
                finished.decision.value if finished.decision else None,
                outcome.detail,
            )
        else:
            logger.info("Job succeeded: job=%s attempts=%s/%s", job.id, job.attempt_count, job.max_attempts)
        self._finish(finished)

    def _finish(self, job: Job) -> None:
        final = self._store.finalize(job.id)
        final = final.model_copy(update={"artifact_deleted": job.artifact_deleted or final.artifact_deleted})
        for callback in list(self._listeners):
            try:
                callback(final)
            except Exception:  # noqa: BLE001
                logger.exception("Job listener failed: job=%s", job.id)

    def _settle(self, job: Job, outcome: AttemptOutcome) -> None:
        """Move an active job forward from whatever state the store holds for it."""
        if job.decision is not None:
            self._finish(self._lifecycle.cleanup(job))
        elif job.status is JobStatus.running:
            self._apply_outcome(job, outcome)
        elif job.status is JobStatus.awaiting_retry:
            remaining = max(0.0, (job.next_run_at or 0.0) - self._clock())
            self._arm_timer(job.id, remaining)

    def _settle_later(self, job_id: str, outcome: AttemptOutcome) -> None:
        self._track_timer(job_id, self._settle_after(job_id, outcome))

    async def _settle_after(self, job_id: str, outcome: AttemptOutcome) -> None:
        await self._sleep(OUTCOME_RETRY_DELAY)
        if self._timers.get(job_id) is asyncio.current_task():
            del self._timers[job_id]
        try:
            job = next((j for j in self._store.list_active() if j.id == job_id), None)
            if job is not None:
                self._settle(job, outcome)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record attempt outcome, retrying: job=%s", job_id)
            self._settle_later(job_id, outcome)

    def _arm_timer(self, job_id: str, delay: float) -> None:
        self._track_timer(job_id, self._retry_after(job_id, delay))

    def _track_timer(self, job_id: str, coro: Awaitable[None]) -> None:
        existing = self._timers.pop(job_id, None)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()
        task = asyncio.ensure_future(coro)
        self._timers[job_id] = task

        def _forget(t: asyncio.Task, jid: str = job_id) -> None:
            if self._timers.get(jid) is t:
                del self._timers[jid]

        task.add_done_callback(_forget)

    async def _retry_after(self, job_id: str, delay: float) -> None:
        await self._sleep(delay)
        # The next attempt may arm a fresh timer for this job.
        if self._timers.get(job_id) is asyncio.current_task():
            del self._timers[job_id]
        job = self._store.get(job_id)
        if job is None or not job.status.is_dispatchable:
            return
        if not self._constraints_met(job):
            logger.info("Retry due but network unavailable, waiting: job=%s", job_id)
            return
        self._spawn(self._run_dispatch(job_id))
