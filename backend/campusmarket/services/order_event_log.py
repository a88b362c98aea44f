from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from campusmarket.extensions import db
from campusmarket.models import OrderEvent

SYSTEM_ACTOR = "system"


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: dict | None) -> str:
    return json.dumps(_safe_value(data or {}), separators=(",", ":"), ensure_ascii=False)


def append_event(
    order_id: int,
    event_type: str,
    *,
    actor: str | None,
    created_at: datetime,
    from_state: str | None = None,
    to_state: str | None = None,
    data: dict | None = None,
) -> OrderEvent:
    """Stage an audit row in the caller's unit of work.

    The caller commits it together with the order mutation it describes, so
    an event never exists for a change that was rolled back.
    """
    row = OrderEvent(
        order_id=int(order_id),
        type=(event_type or "unknown").strip()[:48],
        actor=(str(actor) if actor else SYSTEM_ACTOR)[:64],
        from_state=from_state,
        to_state=to_state,
        data_json=_safe_json(data),
        created_at=created_at,
    )
    db.session.add(row)
    return row


def list_events(order_id: int) -> list[OrderEvent]:
    return (
        OrderEvent.query.filter_by(order_id=int(order_id))
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .all()
    )
