from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from campusmarket.jobs.auto_release_runner import (
    JOB_NAME,
    AutoReleaseScanError,
    count_due_orders,
    run_auto_release,
)
from campusmarket.utils.clock import utc_now
from campusmarket.utils.jwt_utils import get_bearer_token
from campusmarket.utils.job_runs import last_job_run

auto_release_bp = Blueprint("auto_release_bp", __name__, url_prefix="/api")


def _cron_authorized() -> bool:
    secret = (current_app.config.get("AUTO_RELEASE_CRON_SECRET") or "").strip()
    if not secret:
        return True
    supplied = (
        get_bearer_token(request.headers.get("Authorization", ""))
        or (request.headers.get("X-Cron-Secret") or "").strip()
    )
    return bool(supplied) and hmac.compare_digest(supplied, secret)


@auto_release_bp.post("/auto-release")
def trigger_auto_release():
    if not _cron_authorized():
        return jsonify({"error": "Unauthorized"}), 401
    try:
        result = run_auto_release()
    except AutoReleaseScanError as exc:
        return jsonify({"error": str(exc)}), 500
    if result.get("disabled"):
        return jsonify({"error": result.get("message") or "Auto-release is disabled"}), 503
    body = {
        "message": result["message"],
        "scanned": result["scanned"],
        "processed": result["processed"],
        "skipped": result["skipped"],
        "errors": result["errors"],
        "errorDetails": result["errorDetails"],
    }
    return jsonify(body), 200


@auto_release_bp.get("/auto-release/status")
def auto_release_status():
    if not _cron_authorized():
        return jsonify({"error": "Unauthorized"}), 401
    last = last_job_run(JOB_NAME)
    return jsonify(
        {
            "ok": True,
            "due": count_due_orders(utc_now()),
            "last_run": last.to_dict() if last else None,
        }
    ), 200
