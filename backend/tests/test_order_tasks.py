from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from campusmarket.celery_app import auto_release_interval_seconds, create_celery_app
from campusmarket.jobs.auto_release_runner import AutoReleaseScanError
from campusmarket.tasks.order_tasks import _retry_countdown, run_auto_release_task

from order_test_support import OrderTestCase


class AutoReleaseTaskTestCase(OrderTestCase):
    def test_task_runs_batch(self):
        order_id = self.drive_to("delivered_pending_confirm")
        self.clock.advance(days=8)
        result = run_auto_release_task.apply(kwargs={"trace_id": "trace_test"}).get()
        self.assertTrue(result["ok"])
        self.assertEqual(result["processed"], 1)
        self.assertEqual(self.order(order_id).state, "completed")

    def test_task_gives_up_after_retries(self):
        with patch(
            "campusmarket.tasks.order_tasks.run_auto_release",
            side_effect=AutoReleaseScanError("Failed to fetch due orders"),
        ):
            result = run_auto_release_task.apply(kwargs={}, retries=3).get()
        self.assertEqual(result, {"ok": False, "error": "Failed to fetch due orders"})

    def test_backoff_is_capped(self):
        self.assertEqual(_retry_countdown(0), 5)
        self.assertEqual(_retry_countdown(3), 40)
        self.assertEqual(_retry_countdown(20), 900)


class CeleryScheduleTestCase(OrderTestCase):
    def test_beat_runs_auto_release(self):
        celery = create_celery_app(self.app)
        entry = celery.conf.beat_schedule["auto-release-runner"]
        self.assertEqual(entry["task"], "campusmarket.tasks.order_tasks.run_auto_release")
        self.assertEqual(entry["schedule"], float(auto_release_interval_seconds()))

    def test_interval_has_floor(self):
        with patch.dict(os.environ, {"AUTO_RELEASE_INTERVAL_SECONDS": "5"}, clear=False):
            self.assertEqual(auto_release_interval_seconds(), 30)
        with patch.dict(os.environ, {"AUTO_RELEASE_INTERVAL_SECONDS": "junk"}, clear=False):
            self.assertEqual(auto_release_interval_seconds(), 300)


if __name__ == "__main__":
    unittest.main()
