# -*- coding: utf-8 -*-
"""Diet — JSON file storage for analyzed meals (the health-data store)."""

from __future__ import annotations

import asyncio
import errno
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from ..errors import StorageError, StoragePermissionDenied
from .models import DailySummary, NutritionEntry, NutritionRecord, NutritionSummary, NutritionTotals

logger = logging.getLogger(__name__)

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _date_prefix(iso8601: str) -> str:
    return (iso8601 or "")[:10]


def compute_totals(records: List[NutritionRecord]) -> NutritionTotals:
    calories = 0.0
    protein = 0.0
    carbs = 0.0
    fat = 0.0
    for record in records:
        calories += float(record.calories)
        protein += float(record.protein_g)
        carbs += float(record.carbs_g)
        fat += float(record.fat_g)
    return NutritionTotals(
        calories_kcal=round(calories, 1),
        protein_g=round(protein, 1),
        carbs_g=round(carbs, 1),
        fat_g=round(fat, 1),
    )


class NutritionEntryStore:
    """Writes one JSON document per analyzed meal under `root/YYYY-MM-DD/`.

    The entry is dated with the capture timestamp, not the write time.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def save(self, record: NutritionRecord, timestamp: datetime) -> str:
        return await asyncio.to_thread(self.save_sync, record, timestamp)

    def save_sync(self, record: NutritionRecord, timestamp: datetime) -> str:
        try:
            record = NutritionRecord.model_validate(record.model_dump())
        except ValidationError as exc:
            raise StorageError(f"Invalid nutrition record: {exc}") from exc

        eaten_at = _iso(timestamp)
        entry = NutritionEntry(
            entry_id=str(uuid4()),
            created_at=_utc_now(),
            eaten_at=eaten_at,
            record=record,
        )
        day_dir = self.root / _date_prefix(eaten_at)
        fp = day_dir / f"{entry.entry_id}.json"
        try:
            day_dir.mkdir(parents=True, exist_ok=True)
            fp.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        except PermissionError as exc:
            raise StoragePermissionDenied(f"Not allowed to write {fp}: {exc}") from exc
        except OSError as exc:
            if exc.errno in _PERMISSION_ERRNOS:
                raise StoragePermissionDenied(f"Not allowed to write {fp}: {exc}") from exc
            raise StorageError(f"Failed to write {fp}: {exc}") from exc

        logger.info(
            "Saved nutrition entry %s: %s kcal, %r, eaten_at=%s",
            entry.entry_id,
            record.calories,
            record.description,
            eaten_at,
        )
        return entry.entry_id

    def list_entries(
        self,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[NutritionEntry]:
        if not self.root.exists():
            return []

        start_date = start or "0000-01-01"
        end_date = end or "9999-12-31"

        entries: List[NutritionEntry] = []
        for day_dir in sorted(self.root.iterdir(), reverse=True):
            if not day_dir.is_dir() or not (start_date <= day_dir.name <= end_date):
                continue
            for fp in day_dir.glob("*.json"):
                try:
                    raw = json.loads(fp.read_text(encoding="utf-8"))
                    entries.append(NutritionEntry.model_validate(raw))
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping unreadable entry %s: %s", fp, exc)
                    continue
        entries.sort(key=lambda e: e.eaten_at, reverse=True)
        return entries

    def daily_summary(self, *, start: str, end: str) -> NutritionSummary:
        entries = self.list_entries(start=start, end=end)

        per_day: Dict[str, List[NutritionRecord]] = {}
        for entry in entries:
            per_day.setdefault(_date_prefix(entry.eaten_at), []).append(entry.record)

        days = [
            DailySummary(date=day, totals=compute_totals(records), entry_count=len(records))
            for day, records in sorted(per_day.items())
        ]
        return NutritionSummary(
            start=start,
            end=end,
            totals=compute_totals([e.record for e in entries]),
            days=days,
        )
