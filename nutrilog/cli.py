# -*- coding: utf-8 -*-
"""
CLI tool for the meal analysis job queue.

Usage:
    python -m nutrilog.cli enqueue <photo>
    python -m nutrilog.cli status <job_id>
    python -m nutrilog.cli list
    python -m nutrilog.cli run
    python -m nutrilog.cli cleanup
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from .errors import InvalidJobError, JobNotFoundError
from .jobs.models import Job, JobConstraints, JobInput
from .services import Services, build_services


def _format_job(job: Job) -> str:
    line = (
        f"{job.id}  {job.status.value:<14} attempts={job.attempt_count}/{job.max_attempts}"
        f"  artifact={job.input.artifact_ref}"
    )
    if job.cause:
        line += f"  cause={job.cause.value}"
    if job.decision:
        line += f"  photo={'deleted' if job.artifact_deleted else job.decision.value}"
    return line


def cmd_enqueue(services: Services, args: argparse.Namespace) -> int:
    """Copy a photo into the photo directory and queue its analysis."""
    source = Path(args.photo)
    if not source.is_file():
        print(f"Error: Photo not found: {source}")
        return 1

    try:
        captured_at = datetime.fromisoformat(args.captured_at) if args.captured_at else datetime.now(timezone.utc)
    except ValueError:
        print(f"Error: Invalid --captured-at (expected ISO8601): {args.captured_at}")
        return 1
    ref = services.photos.save_photo(source.read_bytes(), suffix=source.suffix or ".jpg")
    try:
        job_id = services.scheduler.enqueue(
            JobInput(artifact_ref=ref, captured_at=captured_at),
            JobConstraints(requires_network=not args.no_network),
        )
    except InvalidJobError as exc:
        services.photos.delete(ref)
        print(f"Error: {exc}")
        return 1

    print(f"Enqueued job {job_id} (photo {ref})")
    return 0


def cmd_status(services: Services, args: argparse.Namespace) -> int:
    try:
        job = services.scheduler.get(args.job_id)
    except JobNotFoundError as exc:
        print(f"Error: {exc}")
        return 1
    print(job.model_dump_json(indent=2))
    return 0


def cmd_list(services: Services, args: argparse.Namespace) -> int:
    active = services.scheduler.list_active()
    history = services.scheduler.list_history(args.limit)

    print(f"Active jobs: {len(active)}")
    for job in active:
        print(f"  {_format_job(job)}")
    print(f"Finished jobs (latest {args.limit}): {len(history)}")
    for job in history:
        print(f"  {_format_job(job)}")
    return 0


async def _run_until_empty(services: Services, timeout: float) -> int:
    scheduler = services.scheduler
    deadline = time.monotonic() + timeout if timeout > 0 else None

    await services.network.probe()
    await scheduler.start()
    try:
        while True:
            await scheduler.drain()
            remaining = scheduler.list_active()
            if not remaining:
                break
            if deadline is not None and time.monotonic() > deadline:
                print(f"Timed out with {len(remaining)} job(s) still queued")
                break
            await services.network.probe()
            if not await scheduler.dispatch_ready():
                await asyncio.sleep(1.0)
    finally:
        await scheduler.stop()
    return len(scheduler.list_active())


def cmd_run(services: Services, args: argparse.Namespace) -> int:
    """Process queued jobs until none are left (or the timeout passes)."""
    before = len(services.scheduler.list_active())
    print(f"Processing {before} queued job(s)...")
    left = asyncio.run(_run_until_empty(services, args.timeout))
    for job in services.scheduler.list_history(max(before, 1)):
        print(f"  {_format_job(job)}")
    return 0 if left == 0 else 2


def cmd_cleanup(services: Services, args: argparse.Namespace) -> int:
    """Delete stale photos, keeping queued and retained ones."""
    report = services.cleanup_photos(max_age_hours=args.max_age_hours)
    print(f"Deleted: {report.deleted_count} files ({report.deleted_bytes / (1024 * 1024):.2f}MB)")
    print(f"Retained (fresh): {report.retained_count}")
    print(f"Skipped (in use / kept for review): {report.skipped_count}")
    print(f"Errors: {report.error_count}")
    print(f"Remaining: {report.remaining_bytes / (1024 * 1024):.2f}MB")
    return 0 if report.error_count == 0 else 1


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Nutrilog meal analysis queue CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a meal photo for analysis")
    enqueue_parser.add_argument("photo", help="Path to the photo")
    enqueue_parser.add_argument("--captured-at", help="ISO8601 capture time (default: now)")
    enqueue_parser.add_argument(
        "--no-network",
        action="store_true",
        help="Do not wait for network connectivity before dispatching",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id")

    # list command
    list_parser = subparsers.add_parser("list", help="List active and finished jobs")
    list_parser.add_argument("--limit", type=int, default=20, help="History rows (default: 20)")

    # run command
    run_parser = subparsers.add_parser("run", help="Process the queue until it is empty")
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=0,
        help="Give up after this many seconds (default: no limit)",
    )

    # cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete stale photos")
    cleanup_parser.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Age threshold (default: NUTRILOG_PHOTO_MAX_AGE_HOURS)",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "enqueue": cmd_enqueue,
        "status": cmd_status,
        "list": cmd_list,
        "run": cmd_run,
        "cleanup": cmd_cleanup,
    }

    return commands[args.command](build_services(), args)


if __name__ == "__main__":
    sys.exit(main())
