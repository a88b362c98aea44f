from __future__ import annotations

import json
import os

from flask import current_app, has_app_context


DEFAULT_FLAGS: dict[str, bool] = {
    "jobs.auto_release_enabled": True,
    "payments.void_on_reject": True,
}


def _coerce_bool(value, default: bool = False) -> bool:
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(default)


def _env_json_flags() -> dict[str, bool]:
    raw = (os.getenv("FEATURE_FLAGS_JSON") or "").strip() or "{}"
    try:
        parsed = json.loads(raw)
    except Exception:
        parsed = {}
    if not isinstance(parsed, dict):
        parsed = {}
    return {str(k): _coerce_bool(v) for k, v in parsed.items()}


def _config_flags() -> dict[str, bool]:
    if not has_app_context():
        return {}
    raw = current_app.config.get("FEATURE_FLAGS") or {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): _coerce_bool(v) for k, v in raw.items()}


def get_all_flags() -> dict[str, bool]:
    flags = dict(DEFAULT_FLAGS)
    flags.update(_env_json_flags())
    # App config overrides env.
    flags.update(_config_flags())
    return flags


def is_enabled(name: str, default: bool = False) -> bool:
    flags = get_all_flags()
    if name not in flags:
        return bool(default)
    return _coerce_bool(flags.get(name), default)
