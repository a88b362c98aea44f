from __future__ import annotations

from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context


class SystemClock:
    """Wall clock. Returns naive UTC datetimes, matching the stored columns."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Clock that only moves when told to; used to walk orders past deadlines."""

    def __init__(self, at: datetime | None = None):
        self._now = at or SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = at

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


_DEFAULT_CLOCK = SystemClock()


def get_clock():
    if has_app_context():
        clock = current_app.extensions.get("clock")
        if clock is not None:
            return clock
    return _DEFAULT_CLOCK


def utc_now() -> datetime:
    return get_clock().now()
