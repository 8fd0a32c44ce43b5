# -*- coding: utf-8 -*-
"""Job queue database — SQLite helpers."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    # WAL + synchronous=FULL: a committed enqueue survives a crash right after it returns.
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = FULL;")
    return conn


def init_jobs_db(db_path: Path) -> None:
    conn = connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                artifact_ref TEXT NOT NULL,
                captured_at TEXT NOT NULL,
                requires_network INTEGER NOT NULL DEFAULT 1,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                status TEXT NOT NULL,
                next_run_at REAL,
                last_error TEXT,
                cause TEXT,
                decision TEXT,
                artifact_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                finished_at TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_next_run ON jobs(status, next_run_at);")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_history (
                id TEXT PRIMARY KEY,
                artifact_ref TEXT NOT NULL,
                captured_at TEXT NOT NULL,
                requires_network INTEGER NOT NULL,
                attempt_count INTEGER NOT NULL,
                max_attempts INTEGER NOT NULL,
                status TEXT NOT NULL,
                next_run_at REAL,
                last_error TEXT,
                cause TEXT,
                decision TEXT NOT NULL,
                artifact_deleted INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                finished_at TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_history_finished ON job_history(finished_at DESC);")
        conn.commit()
    finally:
        conn.close()


@contextmanager
def db_conn(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()
