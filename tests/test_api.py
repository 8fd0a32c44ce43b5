# -*- coding: utf-8 -*-

from __future__ import annotations

import base64
import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from typing import Optional
from unittest import mock

from fastapi.testclient import TestClient

from nutrilog.api import create_app
from nutrilog.config import Settings
from nutrilog.errors import AnalysisConnectionError, MalformedResponseError
from nutrilog.jobs.models import JobInput
from nutrilog.network import NetworkMonitor
from nutrilog.services import build_services

from .fakes import CAPTURED_AT, ScriptedAnalysis, make_record

_JPEG = base64.b64encode(b"\xff\xd8\xff\xe0 fake meal photo").decode("ascii")


class _ApiTestCase(unittest.TestCase):
    analysis_steps = [make_record()]
    connected = True
    extra_env: dict = {}

    def setUp(self) -> None:
        self._tmp = Path(tempfile.mkdtemp(prefix="nutrilog-api-"))
        env = {
            "NUTRILOG_DATA_ROOT": str(self._tmp / "data"),
            "NUTRILOG_DB_PATH": str(self._tmp / "data" / "jobs.db"),
            "NUTRILOG_PHOTOS_DIR": str(self._tmp / "data" / "photos"),
            "NUTRILOG_ENTRIES_DIR": str(self._tmp / "data" / "entries"),
            "NUTRILOG_MAX_IMAGE_BYTES": "1000",
            "NUTRILOG_POLL_INTERVAL": "0.05",
            **self.extra_env,
        }
        with mock.patch.dict(os.environ, env):
            self.cfg = Settings()
        self.analysis = ScriptedAnalysis(list(self.analysis_steps))
        self.services = build_services(self.cfg, analysis=self.analysis, network=self._make_network())
        self.network = self.services.network
        self._prepare()
        self.client = TestClient(create_app(self.cfg, services=self.services))
        self.client.__enter__()

    def _make_network(self) -> Optional[NetworkMonitor]:
        return NetworkMonitor(connected=self.connected)

    def _prepare(self) -> None:
        """Runs after services are built and before the app starts."""

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        shutil.rmtree(self._tmp, ignore_errors=True)

    def _wait_for_status(self, job_id: str, statuses, timeout: float = 3.0) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            body = self.client.get(f"/api/jobs/{job_id}").json()
            if body["status"] in statuses or time.monotonic() > deadline:
                return body
            time.sleep(0.01)

    def _capture(self) -> dict:
        resp = self.client.post(
            "/api/meals/capture",
            json={"image_base64": _JPEG, "image_mime": "image/jpeg", "captured_at": "2024-05-04T12:30:00Z"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()


class TestCaptureFlow(_ApiTestCase):
    def test_health(self) -> None:
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True, "network": True, "active_jobs": 0})

    def test_capture_is_analyzed_saved_and_cleaned_up(self) -> None:
        created = self._capture()
        ref = created["artifact_ref"]
        self.assertTrue(ref.startswith("meal_"))

        job = self._wait_for_status(created["job_id"], {"succeeded", "failed"})

        self.assertEqual(job["status"], "succeeded")
        self.assertEqual(job["attempt_count"], 1)
        self.assertEqual(job["decision"], "delete")
        self.assertTrue(job["artifact_deleted"])
        self.assertFalse(self.services.photos.exists(ref))
        self.assertEqual(self.analysis.calls, [ref])

        entries = self.client.get("/api/meals/entries", params={"start": "2024-05-04", "end": "2024-05-04"}).json()
        self.assertEqual(entries["count"], 1)
        self.assertEqual(entries["entries"][0]["eaten_at"], "2024-05-04T12:30:00Z")

        summary = self.client.get("/api/meals/summary", params={"start": "2024-05-04", "end": "2024-05-04"}).json()
        self.assertEqual(summary["totals"]["calories_kcal"], 520.0)

        listing = self.client.get("/api/jobs").json()
        self.assertEqual(listing["active"], [])
        self.assertEqual([j["id"] for j in listing["history"]], [created["job_id"]])

    def test_bad_images_are_rejected(self) -> None:
        resp = self.client.post("/api/meals/capture", json={"image_base64": "not base64!!"})
        self.assertEqual(resp.status_code, 400)

        big = base64.b64encode(b"x" * 2000).decode("ascii")
        resp = self.client.post("/api/meals/capture", json={"image_base64": big})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("too large", resp.json()["detail"])

    def test_enqueue_unknown_artifact(self) -> None:
        resp = self.client.post(
            "/api/jobs",
            json={"artifact_ref": "meal_missing.jpg", "captured_at": "2024-05-04T12:30:00Z"},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/api/jobs").json()["active"], [])

    def test_unknown_job_is_404(self) -> None:
        self.assertEqual(self.client.get("/api/jobs/does-not-exist").status_code, 404)

    def test_summary_range_validation(self) -> None:
        resp = self.client.get("/api/meals/summary", params={"start": "2024-05-05", "end": "2024-05-04"})
        self.assertEqual(resp.status_code, 400)

    def test_photo_cleanup_deletes_stale_photos(self) -> None:
        stale = self.services.photos.save_photo(b"old")
        stamp = time.time() - 48 * 3600
        os.utime(self.services.photos.resolve(stale), (stamp, stamp))

        resp = self.client.post("/api/photos/cleanup")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["deleted_count"], 1)
        self.assertFalse(self.services.photos.exists(stale))


class TestTerminalFailure(_ApiTestCase):
    analysis_steps = [MalformedResponseError("not json")]

    def test_malformed_response_fails_and_deletes_photo(self) -> None:
        created = self._capture()
        job = self._wait_for_status(created["job_id"], {"succeeded", "failed"})

        self.assertEqual(job["status"], "failed")
        self.assertEqual(job["cause"], "malformed_response")
        self.assertEqual(job["attempt_count"], 1)
        self.assertFalse(self.services.photos.exists(created["artifact_ref"]))
        self.assertEqual(self.client.get("/api/meals/entries").json()["count"], 0)


class TestOffline(_ApiTestCase):
    connected = False

    def test_job_waits_until_network_returns(self) -> None:
        ref = self.services.photos.save_photo(b"meal")
        resp = self.client.post("/api/jobs", json={"artifact_ref": ref, "captured_at": "2024-05-04T12:30:00Z"})
        self.assertEqual(resp.status_code, 200)
        job_id = resp.json()["job_id"]

        time.sleep(0.1)
        self.assertEqual(self.client.get(f"/api/jobs/{job_id}").json()["status"], "enqueued")
        self.assertEqual(self.analysis.calls, [])

        # Queued photos are protected from the stale sweep.
        stamp = time.time() - 48 * 3600
        os.utime(self.services.photos.resolve(ref), (stamp, stamp))
        report = self.client.post("/api/photos/cleanup").json()
        self.assertEqual(report["deleted_count"], 0)
        self.assertEqual(report["skipped_count"], 1)

        self.network.set_connected(True)
        job = self._wait_for_status(job_id, {"succeeded", "failed"})
        self.assertEqual(job["status"], "succeeded")


class TestUnreachableNetwork(_ApiTestCase):
    analysis_steps = [AnalysisConnectionError("offline")]
    extra_env = {"NUTRILOG_NETWORK_PROBE_URL": "http://127.0.0.1:1/"}

    def _make_network(self) -> Optional[NetworkMonitor]:
        # Use the monitor build_services wires up for the configured probe URL.
        return None

    def test_jobs_stay_queued_while_probe_fails(self) -> None:
        created = self._capture()

        deadline = time.monotonic() + 3.0
        while self.network.is_connected() and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.2)

        self.assertFalse(self.client.get("/api/health").json()["network"])
        job = self.client.get(f"/api/jobs/{created['job_id']}").json()
        self.assertEqual(job["status"], "enqueued")
        self.assertEqual(job["attempt_count"], 0)
        self.assertEqual(self.analysis.calls, [])
        self.assertTrue(self.services.photos.exists(created["artifact_ref"]))


class TestPeriodicPhotoCleanup(_ApiTestCase):
    connected = False
    extra_env = {"NUTRILOG_PHOTO_CLEANUP_INTERVAL_HOURS": "0.0001"}

    def _prepare(self) -> None:
        self.stale = self.services.photos.save_photo(b"old")
        self.queued = self.services.photos.save_photo(b"meal")
        self.job_id = self.services.scheduler.enqueue(JobInput(artifact_ref=self.queued, captured_at=CAPTURED_AT))
        stamp = time.time() - 48 * 3600
        for ref in (self.stale, self.queued):
            os.utime(self.services.photos.resolve(ref), (stamp, stamp))

    def test_sweep_runs_on_its_own_and_keeps_queued_photos(self) -> None:
        self.assertTrue(self.services.photos.exists(self.stale))

        deadline = time.monotonic() + 3.0
        while self.services.photos.exists(self.stale) and time.monotonic() < deadline:
            time.sleep(0.02)

        self.assertFalse(self.services.photos.exists(self.stale))
        self.assertTrue(self.services.photos.exists(self.queued))
        self.assertEqual(self.client.get(f"/api/jobs/{self.job_id}").json()["status"], "enqueued")


if __name__ == "__main__":
    unittest.main()
