# -*- coding: utf-8 -*-
"""Jobs — durable job store (SQLite) and an in-memory equivalent.

Only the scheduler writes through these stores. Every mutating call is a
single committed transaction, so a crash leaves each job either before or
after a transition, never half-way.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ..app_db import db_conn, init_jobs_db
from .models import FailureCause, Job, JobConstraints, JobInput, JobStatus, LifecycleDecision

_COLUMNS = (
    "id",
    "artifact_ref",
    "captured_at",
    "requires_network",
    "attempt_count",
    "max_attempts",
    "status",
    "next_run_at",
    "last_error",
    "cause",
    "decision",
    "artifact_deleted",
    "created_at",
    "updated_at",
    "finished_at",
)

_DISPATCHABLE = (JobStatus.enqueued.value, JobStatus.awaiting_retry.value)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _job_to_row(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "artifact_ref": job.input.artifact_ref,
        "captured_at": job.input.captured_at.isoformat(),
        "requires_network": 1 if job.constraints.requires_network else 0,
        "attempt_count": job.attempt_count,
        "max_attempts": job.max_attempts,
        "status": job.status.value,
        "next_run_at": job.next_run_at,
        "last_error": job.last_error,
        "cause": job.cause.value if job.cause else None,
        "decision": job.decision.value if job.decision else None,
        "artifact_deleted": 1 if job.artifact_deleted else 0,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "finished_at": job.finished_at,
    }


def _row_to_job(row: Any) -> Job:
    return Job(
        id=row["id"],
        input=JobInput(artifact_ref=row["artifact_ref"], captured_at=row["captured_at"]),
        constraints=JobConstraints(requires_network=bool(row["requires_network"])),
        attempt_count=int(row["attempt_count"]),
        max_attempts=int(row["max_attempts"]),
        status=JobStatus(row["status"]),
        next_run_at=row["next_run_at"],
        last_error=row["last_error"],
        cause=FailureCause(row["cause"]) if row["cause"] else None,
        decision=LifecycleDecision(row["decision"]) if row["decision"] else None,
        artifact_deleted=bool(row["artifact_deleted"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        finished_at=row["finished_at"],
    )


class JobStore(Protocol):
    def enqueue(self, job: Job) -> None: ...

    def get(self, job_id: str) -> Optional[Job]: ...

    def list_active(self) -> List[Job]: ...

    def list_history(self, limit: int = 50) -> List[Job]: ...

    def next_ready(self, now: float) -> List[Job]: ...

    def mark_attempt(self, job_id: str) -> Optional[Job]: ...

    def mark_awaiting_retry(self, job_id: str, *, next_run_at: float, cause: FailureCause, detail: str) -> Job: ...

    def record_decision(
        self,
        job_id: str,
        *,
        status: JobStatus,
        decision: LifecycleDecision,
        cause: Optional[FailureCause],
        detail: Optional[str],
    ) -> Job: ...

    def mark_artifact_deleted(self, job_id: str) -> bool: ...

    def finalize(self, job_id: str) -> Job: ...

    def active_artifacts(self) -> List[str]: ...

    def retained_artifacts(self) -> List[str]: ...


class SQLiteJobStore:
    """Jobs in `jobs` until finalized, then moved to the append-only `job_history`."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        init_jobs_db(self.db_path)

    def enqueue(self, job: Job) -> None:
        row = _job_to_row(job)
        cols = ", ".join(_COLUMNS)
        marks = ", ".join("?" for _ in _COLUMNS)
        with db_conn(self.db_path) as conn:
            conn.execute(f"INSERT INTO jobs ({cols}) VALUES ({marks})", tuple(row[c] for c in _COLUMNS))

    def get(self, job_id: str) -> Optional[Job]:
        with db_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                row = conn.execute("SELECT * FROM job_history WHERE id = ?", (job_id,)).fetchone()
            return _row_to_job(row) if row else None

    def list_active(self) -> List[Job]:
        with db_conn(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY created_at ASC").fetchall()
            return [_row_to_job(r) for r in rows]

    def list_history(self, limit: int = 50) -> List[Job]:
        with db_conn(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM job_history ORDER BY finished_at DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [_row_to_job(r) for r in rows]

    def next_ready(self, now: float) -> List[Job]:
        with db_conn(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status IN (?, ?) AND (next_run_at IS NULL OR next_run_at <= ?)
                ORDER BY created_at ASC
                """,
                (*_DISPATCHABLE, float(now)),
            ).fetchall()
            return [_row_to_job(r) for r in rows]

    def mark_attempt(self, job_id: str) -> Optional[Job]:
        """Count one attempt and flip to running; None when the job is not dispatchable."""
        with db_conn(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE jobs
                SET attempt_count = attempt_count + 1, status = ?, next_run_at = NULL, updated_at = ?
                WHERE id = ? AND status IN (?, ?) AND attempt_count < max_attempts
                """,
                (JobStatus.running.value, _utc_now(), job_id, *_DISPATCHABLE),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return _row_to_job(row)

    def mark_awaiting_retry(self, job_id: str, *, next_run_at: float, cause: FailureCause, detail: str) -> Job:
        with db_conn(self.db_path) as conn:
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, next_run_at = ?, cause = ?, last_error = ?, updated_at = ?
                WHERE id = ? AND decision IS NULL
                """,
                (JobStatus.awaiting_retry.value, float(next_run_at), cause.value, detail, _utc_now(), job_id),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise KeyError(job_id)
        return _row_to_job(row)

    def record_decision(
        self,
        job_id: str,
        *,
        status: JobStatus,
        decision: LifecycleDecision,
        cause: Optional[FailureCause],
        detail: Optional[str],
    ) -> Job:
        """Write the terminal status and lifecycle decision once; later calls are no-ops."""
        now = _utc_now()
        with db_conn(self.db_path) as conn:
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, decision = ?, cause = ?, last_error = ?, next_run_at = NULL,
                    updated_at = ?, finished_at = ?
                WHERE id = ? AND decision IS NULL
                """,
                (
                    status.value,
                    decision.value,
                    cause.value if cause else None,
                    detail,
                    now,
                    now,
                    job_id,
                ),
            )
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                row = conn.execute("SELECT * FROM job_history WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise KeyError(job_id)
        return _row_to_job(row)

    def mark_artifact_deleted(self, job_id: str) -> bool:
        """True only for the call that flips the flag."""
        with db_conn(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE jobs SET artifact_deleted = 1, updated_at = ? WHERE id = ? AND artifact_deleted = 0",
                (_utc_now(), job_id),
            )
            return cur.rowcount > 0

    def finalize(self, job_id: str) -> Job:
        cols = ", ".join(_COLUMNS)
        with db_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                done = conn.execute("SELECT * FROM job_history WHERE id = ?", (job_id,)).fetchone()
                if done is None:
                    raise KeyError(job_id)
                return _row_to_job(done)
            if row["decision"] is None:
                raise ValueError(f"Job {job_id} has no lifecycle decision yet")
            conn.execute(f"INSERT OR IGNORE INTO job_history ({cols}) SELECT {cols} FROM jobs WHERE id = ?", (job_id,))
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return _row_to_job(row)

    def active_artifacts(self) -> List[str]:
        with db_conn(self.db_path) as conn:
            rows = conn.execute("SELECT artifact_ref FROM jobs WHERE decision IS NULL").fetchall()
            return [r["artifact_ref"] for r in rows]

    def retained_artifacts(self) -> List[str]:
        retain = LifecycleDecision.retain.value
        with db_conn(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT artifact_ref FROM jobs WHERE decision = ?
                UNION
                SELECT artifact_ref FROM job_history WHERE decision = ?
                """,
                (retain, retain),
            ).fetchall()
            return [r["artifact_ref"] for r in rows]


class InMemoryJobStore:
    """Same contract as `SQLiteJobStore`, without durability."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, Job] = {}
        self._history: Dict[str, Job] = {}

    def enqueue(self, job: Job) -> None:
        with self._lock:
            if job.id in self._active or job.id in self._history:
                raise ValueError(f"Duplicate job id: {job.id}")
            self._active[job.id] = job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._active.get(job_id) or self._history.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_active(self) -> List[Job]:
        with self._lock:
            jobs = sorted(self._active.values(), key=lambda j: j.created_at)
            return [j.model_copy(deep=True) for j in jobs]

    def list_history(self, limit: int = 50) -> List[Job]:
        with self._lock:
            jobs = sorted(self._history.values(), key=lambda j: j.finished_at or "", reverse=True)
            return [j.model_copy(deep=True) for j in jobs[: int(limit)]]

    def next_ready(self, now: float) -> List[Job]:
        with self._lock:
            ready = [
                j
                for j in self._active.values()
                if j.status.is_dispatchable and (j.next_run_at is None or j.next_run_at <= now)
            ]
            ready.sort(key=lambda j: j.created_at)
            return [j.model_copy(deep=True) for j in ready]

    def mark_attempt(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._active.get(job_id)
            if job is None or not job.status.is_dispatchable or job.attempt_count >= job.max_attempts:
                return None
            job.attempt_count += 1
            job.status = JobStatus.running
            job.next_run_at = None
            job.updated_at = _utc_now()
            return job.model_copy(deep=True)

    def mark_awaiting_retry(self, job_id: str, *, next_run_at: float, cause: FailureCause, detail: str) -> Job:
        with self._lock:
            job = self._active.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if job.decision is None:
                job.status = JobStatus.awaiting_retry
                job.next_run_at = float(next_run_at)
                job.cause = cause
                job.last_error = detail
                job.updated_at = _utc_now()
            return job.model_copy(deep=True)

    def record_decision(
        self,
        job_id: str,
        *,
        status: JobStatus,
        decision: LifecycleDecision,
        cause: Optional[FailureCause],
        detail: Optional[str],
    ) -> Job:
        with self._lock:
            job = self._active.get(job_id) or self._history.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if job.decision is None:
                now = _utc_now()
                job.status = status
                job.decision = decision
                job.cause = cause
                job.last_error = detail
                job.next_run_at = None
                job.updated_at = now
                job.finished_at = now
            return job.model_copy(deep=True)

    def mark_artifact_deleted(self, job_id: str) -> bool:
        with self._lock:
            job = self._active.get(job_id)
            if job is None or job.artifact_deleted:
                return False
            job.artifact_deleted = True
            job.updated_at = _utc_now()
            return True

    def finalize(self, job_id: str) -> Job:
        with self._lock:
            job = self._active.get(job_id)
            if job is None:
                done = self._history.get(job_id)
                if done is None:
                    raise KeyError(job_id)
                return done.model_copy(deep=True)
            if job.decision is None:
                raise ValueError(f"Job {job_id} has no lifecycle decision yet")
            self._history.setdefault(job_id, job)
            del self._active[job_id]
            return job.model_copy(deep=True)

    def active_artifacts(self) -> List[str]:
        with self._lock:
            return [j.input.artifact_ref for j in self._active.values() if j.decision is None]

    def retained_artifacts(self) -> List[str]:
        with self._lock:
            jobs = list(self._active.values()) + list(self._history.values())
            return sorted({j.input.artifact_ref for j in jobs if j.decision is LifecycleDecision.retain})
