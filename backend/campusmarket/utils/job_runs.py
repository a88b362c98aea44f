from __future__ import annotations

import logging
from datetime import datetime

from campusmarket.extensions import db
from campusmarket.models import JobRun
from campusmarket.utils.clock import utc_now

logger = logging.getLogger(__name__)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    processed: int = 0,
    failed: int = 0,
    error: str | None = None,
) -> JobRun | None:
    now = utc_now()
    duration_ms: int | None = None
    try:
        duration_ms = max(0, int((now - started_at).total_seconds() * 1000))
    except Exception:
        duration_ms = None
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=now,
            ok=bool(ok),
            duration_ms=duration_ms,
            processed=int(processed or 0),
            failed=int(failed or 0),
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except Exception:
        db.session.rollback()
        logger.exception("job_run_record_failed job=%s", job_name)
        return None


def last_job_run(job_name: str) -> JobRun | None:
    return (
        JobRun.query.filter_by(job_name=job_name)
        .order_by(JobRun.ran_at.desc(), JobRun.id.desc())
        .first()
    )
