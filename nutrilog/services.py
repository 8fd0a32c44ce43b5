# -*- coding: utf-8 -*-
"""Service wiring shared by the HTTP app and the CLI."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from .config import Settings, settings as default_settings
from .diet.storage import NutritionEntryStore
from .diet.vision import VisionAnalysisService, resolve_vision_settings
from .jobs.contracts import AnalysisService
from .jobs.executor import WorkerExecutor
from .jobs.lifecycle import ResourceLifecycleManager
from .jobs.retry import RetryPolicy
from .jobs.scheduler import JobScheduler
from .jobs.storage import JobStore, SQLiteJobStore
from .network import NetworkMonitor
from .photos.manager import CleanupReport, PhotoManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JobStore
    photos: PhotoManager
    entries: NutritionEntryStore
    analysis: AnalysisService
    network: NetworkMonitor
    policy: RetryPolicy
    executor: WorkerExecutor
    lifecycle: ResourceLifecycleManager
    scheduler: JobScheduler

    def protected_artifacts(self) -> List[str]:
        """Photos the stale sweep must leave alone: queued work plus retained failures."""
        return sorted(set(self.store.active_artifacts()) | set(self.store.retained_artifacts()))

    def cleanup_photos(self, *, max_age_hours: Optional[float] = None) -> CleanupReport:
        hours = self.settings.photo_max_age_hours if max_age_hours is None else max_age_hours
        return self.photos.cleanup_stale(max_age_seconds=hours * 3600, keep=self.protected_artifacts())

    async def sweep_photos_periodically(self, interval_seconds: float) -> None:
        """Run the stale photo sweep every `interval_seconds` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(self.cleanup_photos)
            except Exception:  # noqa: BLE001
                logger.exception("Periodic photo cleanup failed")


def build_services(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[JobStore] = None,
    analysis: Optional[AnalysisService] = None,
    network: Optional[NetworkMonitor] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
) -> Services:
    cfg = cfg or default_settings
    photos = PhotoManager(cfg.photos_dir)
    entries = NutritionEntryStore(cfg.entries_dir)
    store = store if store is not None else SQLiteJobStore(cfg.db_path)
    if analysis is None:
        analysis = VisionAnalysisService(photos, vision=resolve_vision_settings())
    if network is None:
        network = NetworkMonitor(probe_url=cfg.network_probe_url or cfg.opencode_base_url)
    policy = RetryPolicy(
        max_attempts=cfg.max_attempts,
        initial_delay=cfg.initial_delay,
        multiplier=cfg.backoff_multiplier,
    )
    executor = WorkerExecutor(analysis=analysis, storage=entries, files=photos, policy=policy)
    lifecycle = ResourceLifecycleManager(store, photos)
    scheduler = JobScheduler(
        store,
        executor,
        policy,
        lifecycle,
        network=network,
        files=photos,
        concurrency=cfg.worker_concurrency,
        attempt_timeout=cfg.attempt_timeout,
        poll_interval=cfg.poll_interval,
        sleep=sleep,
        clock=clock,
    )
    return Services(
        settings=cfg,
        store=store,
        photos=photos,
        entries=entries,
        analysis=analysis,
        network=network,
        policy=policy,
        executor=executor,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )
