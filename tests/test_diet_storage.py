# -*- coding: utf-8 -*-

from __future__ import annotations

import errno
import json
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

from nutrilog.diet.models import NutritionRecord
from nutrilog.diet.storage import NutritionEntryStore, compute_totals
from nutrilog.errors import StorageError, StoragePermissionDenied

from .fakes import CAPTURED_AT, make_record


class TestNutritionEntryStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = Path(tempfile.mkdtemp(prefix="nutrilog-entries-"))
        self.store = NutritionEntryStore(self._tmp / "entries")

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)

    async def test_save_uses_capture_timestamp(self) -> None:
        entry_id = await self.store.save(make_record(), CAPTURED_AT)

        fp = self._tmp / "entries" / "2024-05-04" / f"{entry_id}.json"
        self.assertTrue(fp.exists())
        raw = json.loads(fp.read_text(encoding="utf-8"))
        self.assertEqual(raw["eaten_at"], "2024-05-04T12:30:00Z")
        self.assertEqual(raw["record"]["calories"], 520)
        self.assertEqual(raw["source"], "vision")

    async def test_naive_timestamp_is_treated_as_utc(self) -> None:
        entry_id = await self.store.save(make_record(), datetime(2024, 5, 4, 23, 59))
        entries = self.store.list_entries()

        self.assertEqual(entries[0].entry_id, entry_id)
        self.assertEqual(entries[0].eaten_at, "2024-05-04T23:59:00Z")

    async def test_permission_error_is_distinguished(self) -> None:
        denied = PermissionError(errno.EACCES, "Permission denied")
        with mock.patch.object(Path, "write_text", side_effect=denied):
            with self.assertRaises(StoragePermissionDenied):
                await self.store.save(make_record(), CAPTURED_AT)

        read_only = OSError(errno.EROFS, "Read-only file system")
        with mock.patch.object(Path, "write_text", side_effect=read_only):
            with self.assertRaises(StoragePermissionDenied):
                await self.store.save(make_record(), CAPTURED_AT)

    async def test_other_os_errors_are_generic_storage_errors(self) -> None:
        full = OSError(errno.ENOSPC, "No space left on device")
        with mock.patch.object(Path, "write_text", side_effect=full):
            with self.assertRaises(StorageError) as ctx:
                await self.store.save(make_record(), CAPTURED_AT)
        self.assertNotIsInstance(ctx.exception, StoragePermissionDenied)

    async def test_invalid_record_is_rejected(self) -> None:
        bogus = NutritionRecord.model_construct(
            calories=0,
            protein_g=0.0,
            carbs_g=0.0,
            fat_g=0.0,
            description="nothing",
            items=[],
        )
        with self.assertRaises(StorageError):
            await self.store.save(bogus, CAPTURED_AT)
        self.assertEqual(self.store.list_entries(), [])

    async def test_list_and_daily_summary(self) -> None:
        next_day = CAPTURED_AT + timedelta(days=1)
        await self.store.save(make_record(calories=500), CAPTURED_AT)
        await self.store.save(make_record(calories=300, description="Yogurt"), CAPTURED_AT + timedelta(hours=2))
        await self.store.save(make_record(calories=800), next_day)

        self.assertEqual(len(self.store.list_entries()), 3)
        only_first = self.store.list_entries(start="2024-05-04", end="2024-05-04")
        self.assertEqual([e.record.description for e in only_first], ["Yogurt", "Chicken rice bowl"])

        summary = self.store.daily_summary(start="2024-05-04", end="2024-05-05")
        self.assertEqual(summary.totals.calories_kcal, 1600.0)
        self.assertEqual([d.date for d in summary.days], ["2024-05-04", "2024-05-05"])
        self.assertEqual(summary.days[0].entry_count, 2)
        self.assertEqual(summary.days[0].totals.calories_kcal, 800.0)

    def test_list_entries_on_missing_root(self) -> None:
        self.assertEqual(self.store.list_entries(), [])


class TestComputeTotals(unittest.TestCase):
    def test_sums_and_rounds(self) -> None:
        totals = compute_totals([make_record(calories=100), make_record(calories=250)])
        self.assertEqual(totals.calories_kcal, 350.0)
        self.assertEqual(totals.protein_g, 64.0)
        self.assertEqual(totals.carbs_g, 120.0)
        self.assertEqual(totals.fat_g, 28.0)

    def test_empty(self) -> None:
        self.assertEqual(compute_totals([]).calories_kcal, 0.0)


if __name__ == "__main__":
    unittest.main()
