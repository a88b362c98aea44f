from __future__ import annotations

import json
import logging

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from campusmarket.extensions import db
from campusmarket.models import Order
from campusmarket.services.order_actions import auto_release_order
from campusmarket.services.order_state_machine import OrderState
from campusmarket.utils.clock import get_clock
from campusmarket.utils.feature_flags import is_enabled
from campusmarket.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

JOB_NAME = "auto_release"
DEFAULT_BATCH_LIMIT = 200


class AutoReleaseScanError(RuntimeError):
    """The due-order query itself failed; nothing was processed."""


def _batch_limit(limit: int | None) -> int:
    if limit is None and has_app_context():
        limit = current_app.config.get("AUTO_RELEASE_BATCH_LIMIT")
    try:
        value = int(limit or DEFAULT_BATCH_LIMIT)
    except (TypeError, ValueError):
        value = DEFAULT_BATCH_LIMIT
    return max(1, min(value, 5000))


def _due_filter(now):
    return (
        Order.state == OrderState.DELIVERED_PENDING_CONFIRM,
        Order.auto_release_at.isnot(None),
        Order.auto_release_at <= now,
        Order.stripe_payment_intent_id.isnot(None),
    )


def due_order_ids(now, limit: int) -> list[int]:
    rows = (
        db.session.query(Order.id)
        .filter(*_due_filter(now))
        .order_by(Order.auto_release_at.asc(), Order.id.asc())
        .limit(int(limit))
        .all()
    )
    return [int(r[0]) for r in rows]


def count_due_orders(now) -> int:
    return int(db.session.query(Order.id).filter(*_due_filter(now)).count())


def _current_state(order_id: int) -> str | None:
    return db.session.query(Order.state).filter(Order.id == int(order_id)).scalar()


def _result(*, ok: bool, message: str, scanned=0, processed=0, skipped=0, details=None, **extra) -> dict:
    details = list(details or [])
    result = {
        "ok": ok,
        "message": message,
        "scanned": int(scanned),
        "processed": int(processed),
        "skipped": int(skipped),
        "errors": len(details),
        "errorDetails": details,
    }
    result.update(extra)
    return result


def run_auto_release(*, limit: int | None = None) -> dict:
    """Complete every delivered order whose confirmation window has lapsed.

    Each due order is captured and completed on its own; one failing order
    is reported in ``errorDetails`` and does not stop the rest. An order that
    a buyer confirmed while the batch was running is counted as skipped.
    Raises AutoReleaseScanError when the due orders cannot be listed at all.
    """
    clock = get_clock()
    started_at = clock.now()

    if not is_enabled("jobs.auto_release_enabled", default=True):
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started_at, error="disabled_by_flag")
        return _result(ok=False, message="Auto-release is disabled", disabled=True)

    try:
        order_ids = due_order_ids(started_at, _batch_limit(limit))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("auto_release_scan_failed")
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started_at, error=f"scan_failed:{exc}")
        raise AutoReleaseScanError("Failed to fetch due orders") from exc

    processed = 0
    skipped = 0
    details: list[str] = []
    for order_id in order_ids:
        try:
            outcome = auto_release_order(order_id)
        except Exception as exc:
            db.session.rollback()
            logger.exception("auto_release_order_crashed order_id=%s", order_id)
            details.append(f"Failed to process order {order_id}: {exc}")
            continue

        if outcome.ok:
            processed += 1
            continue
        if _current_state(order_id) == OrderState.COMPLETED:
            skipped += 1
            continue
        details.append(f"Failed to process order {order_id}: {outcome.message}")

    message = f"Auto-released {processed} order(s)"
    if details:
        message += f", {len(details)} failed"
    result = _result(
        ok=not details,
        message=message,
        scanned=len(order_ids),
        processed=processed,
        skipped=skipped,
        details=details,
        ts=started_at.isoformat(),
    )
    record_job_run(
        job_name=JOB_NAME,
        ok=not details,
        started_at=started_at,
        processed=processed,
        failed=len(details),
        error="; ".join(details)[:1000] or None,
    )
    logger.info(json.dumps({"event": "auto_release_run", **{k: v for k, v in result.items() if k != "errorDetails"}}))
    return result


def run_once(*, limit: int | None = None) -> dict:
    """Run one batch outside a request, e.g. from a cron shell."""
    from campusmarket import create_app

    app = create_app()
    with app.app_context():
        return run_auto_release(limit=limit)
