from __future__ import annotations

import json
import time

from celery import shared_task
from flask import current_app

from campusmarket.jobs.auto_release_runner import AutoReleaseScanError, run_auto_release
from campusmarket.utils.clock import utc_now


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": utc_now().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff, capped at 15 minutes.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name="campusmarket.tasks.order_tasks.run_auto_release",
    max_retries=3,
)
def run_auto_release_task(self, *, limit: int | None = None, trace_id: str = ""):
    started = time.perf_counter()
    try:
        result = run_auto_release(limit=limit)
    except AutoReleaseScanError as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "run_auto_release",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("run_auto_release", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        return {"ok": False, "error": str(exc)}

    _task_log(
        "run_auto_release",
        status="ok" if result.get("ok") else ("disabled" if result.get("disabled") else "partial"),
        started_at=started,
        trace_id=trace_id,
        scanned=result.get("scanned", 0),
        processed=result.get("processed", 0),
        skipped=result.get("skipped", 0),
        errors=result.get("errors", 0),
    )
    return result
