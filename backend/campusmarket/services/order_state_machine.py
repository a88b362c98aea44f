"""Order lifecycle transitions.

Every change to an order's state goes through ``apply_transition``. The
transition table below is the only place that knows which state may follow
which, who may ask for it, and which event type records it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import sqlalchemy as sa

from campusmarket.extensions import db
from campusmarket.models import Order
from campusmarket.services.order_errors import (
    ConcurrencyConflictError,
    InvalidOrderStateError,
    OrderUnauthorizedError,
    OrderValidationError,
)
from campusmarket.services.order_event_log import SYSTEM_ACTOR, append_event
from campusmarket.utils.clock import get_clock


AUTO_RELEASE_AFTER = timedelta(days=7)


class OrderState:
    INITIATED = "initiated"
    SELLER_ACCEPT = "seller_accept"
    DELIVERING = "delivering"
    DELIVERED_PENDING_CONFIRM = "delivered_pending_confirm"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (INITIATED, SELLER_ACCEPT, DELIVERING, DELIVERED_PENDING_CONFIRM, COMPLETED, CANCELLED)
    TERMINAL = frozenset({COMPLETED, CANCELLED})
    RENTAL_EDITABLE = frozenset({INITIATED, SELLER_ACCEPT})


class ActorRole:
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


@dataclass(frozen=True)
class TransitionRule:
    action: str
    from_state: str
    to_state: str
    actor_role: str
    event_type: str
    requires_intent: bool = False
    requires_deadline: bool = False


TRANSITIONS = {
    "authorize": TransitionRule(
        "authorize", OrderState.INITIATED, OrderState.SELLER_ACCEPT, ActorRole.BUYER, "authorized"
    ),
    "accept": TransitionRule(
        "accept", OrderState.SELLER_ACCEPT, OrderState.DELIVERING, ActorRole.SELLER, "accepted"
    ),
    "reject": TransitionRule(
        "reject", OrderState.SELLER_ACCEPT, OrderState.CANCELLED, ActorRole.SELLER, "cancelled"
    ),
    "mark_delivered": TransitionRule(
        "mark_delivered",
        OrderState.DELIVERING,
        OrderState.DELIVERED_PENDING_CONFIRM,
        ActorRole.SELLER,
        "delivered",
    ),
    "confirm": TransitionRule(
        "confirm",
        OrderState.DELIVERED_PENDING_CONFIRM,
        OrderState.COMPLETED,
        ActorRole.BUYER,
        "confirmed",
        requires_intent=True,
    ),
    "auto_release": TransitionRule(
        "auto_release",
        OrderState.DELIVERED_PENDING_CONFIRM,
        OrderState.COMPLETED,
        ActorRole.SYSTEM,
        "auto_released",
        requires_intent=True,
        requires_deadline=True,
    ),
}


def get_rule(action: str) -> TransitionRule:
    rule = TRANSITIONS.get((action or "").strip())
    if rule is None:
        raise OrderValidationError(f"Unknown order action: {action}")
    return rule


def is_party(order: Order, actor_id: str | None) -> bool:
    actor = (actor_id or "").strip()
    return bool(actor) and actor in (order.buyer_id, order.seller_id)


def require_actor(order: Order, role: str, actor_id: str | None) -> None:
    actor = (actor_id or "").strip()
    if role == ActorRole.SYSTEM:
        ok = actor == SYSTEM_ACTOR
    elif role == ActorRole.BUYER:
        ok = bool(actor) and actor == order.buyer_id
    else:
        ok = bool(actor) and actor == order.seller_id
    if not ok:
        raise OrderUnauthorizedError(
            f"Only the {role} of this order can do that",
            order_id=order.id,
        )


def check_transition(order: Order, action: str, actor_id: str | None, *, now: datetime | None = None) -> TransitionRule:
    """Validate ``action`` against the order as loaded; raises, never mutates."""
    rule = get_rule(action)
    require_actor(order, rule.actor_role, actor_id)

    current = order.state or ""
    if current != rule.from_state:
        raise InvalidOrderStateError(
            f"Cannot {rule.action.replace('_', ' ')} an order that is {current or 'unknown'}",
            order_id=order.id,
            details={"state": current, "expected": rule.from_state},
        )
    if rule.requires_intent and not order.stripe_payment_intent_id:
        raise InvalidOrderStateError("Order has no payment authorization to capture", order_id=order.id)
    if rule.requires_deadline:
        at = now or get_clock().now()
        if order.auto_release_at is None or at < order.auto_release_at:
            raise InvalidOrderStateError(
                "Order is not yet due for auto-release",
                order_id=order.id,
                details={"auto_release_at": order.auto_release_at.isoformat() if order.auto_release_at else None},
            )
    return rule


def apply_order_update(
    order: Order,
    *,
    expected_state: str,
    values: dict,
    event_type: str,
    actor_id: str,
    now: datetime,
    event_data: dict | None = None,
    guards: tuple = (),
    before_commit=None,
) -> Order:
    """Conditionally update one order row and record the event, in one commit.

    The UPDATE is gated on ``state == expected_state``. If another writer moved
    the order first, nothing is written and ConcurrencyConflictError is raised.
    ``guards`` are extra column conditions the row must still satisfy.

    ``before_commit`` runs after the UPDATE has matched the row and before the
    commit, while the row is still locked by this transaction. Gateway calls
    that must only happen when the update wins go there. If it raises, the
    update is rolled back. A dict it returns is merged into the event data.
    """
    values = dict(values)
    values.setdefault("updated_at", now)
    values.setdefault("updated_by", actor_id)
    stmt = (
        sa.update(Order)
        .where(Order.id == order.id, Order.state == expected_state, *guards)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.rollback()
        raise ConcurrencyConflictError(
            "Order was changed by someone else, reload and try again",
            order_id=order.id,
            details={"expected_state": expected_state},
        )

    if before_commit is not None:
        try:
            extra = before_commit()
        except Exception:
            db.session.rollback()
            raise
        if extra:
            event_data = {**(event_data or {}), **extra}

    append_event(
        order.id,
        event_type,
        actor=actor_id,
        created_at=now,
        from_state=expected_state,
        to_state=values.get("state", expected_state),
        data=event_data,
    )
    db.session.commit()
    db.session.refresh(order)
    return order


def apply_transition(
    order: Order,
    action: str,
    *,
    actor_id: str,
    changes: dict | None = None,
    event_data: dict | None = None,
    guards: tuple = (),
    clock=None,
    before_commit=None,
) -> Order:
    now = (clock or get_clock()).now()
    rule = check_transition(order, action, actor_id, now=now)
    guards = tuple(guards)
    if rule.requires_deadline:
        guards += (Order.auto_release_at <= now,)

    values = dict(changes or {})
    values["state"] = rule.to_state
    if rule.action == "mark_delivered":
        values["delivered_at"] = now
        values["auto_release_at"] = now + AUTO_RELEASE_AFTER
    elif rule.to_state == OrderState.COMPLETED:
        values["confirmed_at"] = now
    elif rule.to_state == OrderState.CANCELLED:
        values["cancelled_at"] = now

    return apply_order_update(
        order,
        expected_state=rule.from_state,
        values=values,
        event_type=rule.event_type,
        actor_id=actor_id,
        now=now,
        event_data=event_data,
        guards=guards,
        before_commit=before_commit,
    )
