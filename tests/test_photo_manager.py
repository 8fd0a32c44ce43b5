# -*- coding: utf-8 -*-

from __future__ import annotations

import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path

from nutrilog.photos.manager import PhotoManager


class TestPhotoManager(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = Path(tempfile.mkdtemp(prefix="nutrilog-photos-"))
        self.manager = PhotoManager(self._tmp / "photos")

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)

    def _age(self, ref: str, hours: float) -> None:
        stamp = time.time() - hours * 3600
        os.utime(self.manager.resolve(ref), (stamp, stamp))

    def test_save_photo_naming(self) -> None:
        ref = self.manager.save_photo(b"jpeg", suffix=".JPG")
        png = self.manager.save_photo(b"png", suffix="png")
        odd = self.manager.save_photo(b"???", suffix=".exe")

        self.assertRegex(ref, r"^meal_\d{8}_\d{6}_[0-9a-f]{8}\.jpg$")
        self.assertTrue(png.endswith(".png"))
        self.assertTrue(odd.endswith(".jpg"))
        self.assertTrue(self.manager.exists(ref))
        self.assertEqual(self.manager.resolve(ref).read_bytes(), b"jpeg")

    def test_resolve_rejects_escapes(self) -> None:
        with self.assertRaises(ValueError):
            self.manager.resolve("")
        with self.assertRaises(ValueError):
            self.manager.resolve("../jobs.db")
        with self.assertRaises(ValueError):
            self.manager.resolve("/etc/passwd")
        self.assertFalse(self.manager.exists("../jobs.db"))

    def test_delete_is_idempotent(self) -> None:
        ref = self.manager.save_photo(b"jpeg")

        self.assertTrue(self.manager.delete(ref))
        with self.assertLogs("nutrilog.photos.manager", level="WARNING"):
            self.assertFalse(self.manager.delete(ref))
        self.assertFalse(self.manager.exists(ref))

    def test_delete_refuses_paths_outside_directory(self) -> None:
        outside = self._tmp / "keep.txt"
        outside.write_text("x", encoding="utf-8")

        self.assertFalse(self.manager.delete("../keep.txt"))
        self.assertTrue(outside.exists())

    def test_cleanup_stale_skips_kept_and_fresh(self) -> None:
        old = self.manager.save_photo(b"a" * 10)
        kept = self.manager.save_photo(b"b" * 20)
        fresh = self.manager.save_photo(b"c" * 30)
        self._age(old, 30)
        self._age(kept, 30)
        self._age(fresh, 1)

        report = self.manager.cleanup_stale(max_age_seconds=24 * 3600, keep=[kept, "../ignored.jpg"])

        self.assertEqual(report.deleted_count, 1)
        self.assertEqual(report.deleted_bytes, 10)
        self.assertEqual(report.skipped_count, 1)
        self.assertEqual(report.retained_count, 1)
        self.assertEqual(report.error_count, 0)
        self.assertEqual(report.remaining_bytes, 50)
        self.assertFalse(self.manager.exists(old))
        self.assertTrue(self.manager.exists(kept))
        self.assertTrue(self.manager.exists(fresh))

    def test_cleanup_on_missing_directory(self) -> None:
        report = self.manager.cleanup_stale(max_age_seconds=0)
        self.assertEqual(report.deleted_count, 0)
        self.assertFalse((self._tmp / "photos").exists())


if __name__ == "__main__":
    unittest.main()
