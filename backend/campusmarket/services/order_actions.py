"""Client-facing order actions.

Each action returns an ``ActionResult``. Domain failures raised inside an
action are turned into failed results here and never escape to the caller.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import wraps

from flask import current_app

from campusmarket.extensions import db
from campusmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from campusmarket.integrations.payments.base import (
    PaymentAlreadyCapturedError,
    PaymentProviderError,
)
from campusmarket.integrations.payments.factory import get_payments_provider
from campusmarket.models import Listing, Order, OrderEvent, Thread
from campusmarket.models.listing import DELIVERY_METHODS
from campusmarket.services.order_errors import (
    ConcurrencyConflictError,
    InvalidOrderStateError,
    OrderError,
    OrderNotFoundError,
    OrderUnauthorizedError,
    OrderValidationError,
    PaymentGatewayError,
)
from campusmarket.services.order_event_log import SYSTEM_ACTOR, append_event, list_events
from campusmarket.services.order_pricing import default_rental_days, quote_purchase, quote_rental
from campusmarket.services.order_state_machine import (
    ActorRole,
    OrderState,
    apply_order_update,
    apply_transition,
    check_transition,
    is_party,
    require_actor,
)
from campusmarket.utils.clock import get_clock
from campusmarket.utils.feature_flags import is_enabled


AUTHORIZATION_VOIDED = "authorization_voided"


@dataclass
class ActionResult:
    ok: bool
    data: dict = field(default_factory=dict)
    error: OrderError | None = None

    @classmethod
    def success(cls, data: dict | None = None) -> "ActionResult":
        return cls(ok=True, data=dict(data or {}))

    @classmethod
    def failure(cls, error: OrderError) -> "ActionResult":
        return cls(ok=False, error=error)

    @property
    def code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @property
    def message(self) -> str:
        return self.error.message if self.error is not None else ""

    @property
    def status_code(self) -> int:
        return 200 if self.ok else int(self.error.http_status)

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, **self.data}
        return self.error.to_dict()


def _log(event: str, **fields) -> None:
    current_app.logger.info(json.dumps({"event": event, **fields}, default=str))


def order_action(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            data = fn(*args, **kwargs)
        except OrderError as exc:
            db.session.rollback()
            _log(
                "order_action_failed",
                action=fn.__name__,
                code=exc.code,
                order_id=exc.order_id,
                error=exc.message,
            )
            return ActionResult.failure(exc)
        return ActionResult.success(data)

    return wrapper


def _parse_id(value, label: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise OrderValidationError(f"{label} must be a number")
    if parsed <= 0:
        raise OrderValidationError(f"{label} must be a number")
    return parsed


def _require_actor_id(actor_id) -> str:
    actor = (str(actor_id) if actor_id is not None else "").strip()
    if not actor:
        raise OrderUnauthorizedError("Sign in to continue")
    return actor


def _load_order(order_id) -> Order:
    oid = _parse_id(order_id, "Order id")
    order = db.session.get(Order, oid)
    if order is None:
        raise OrderNotFoundError("Order not found", order_id=oid)
    return order


def _provider(order_id: int | None = None):
    try:
        return get_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        raise PaymentGatewayError(
            "Payments are not available right now",
            order_id=order_id,
            details={"reason": str(exc)},
        )


def _gateway_error(exc: Exception, *, order_id: int, operation: str) -> PaymentGatewayError:
    _log(
        "payment_gateway_failed",
        order_id=int(order_id),
        operation=operation,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return PaymentGatewayError(
        f"Payment {operation} failed, please try again",
        order_id=order_id,
        details={"operation": operation, "reason": str(exc)},
    )


def authorize_idempotency_key(order: Order) -> str:
    key = f"order:{int(order.id)}:authorize:{int(order.total_cents or 0)}"
    voided = OrderEvent.query.filter_by(order_id=int(order.id), type=AUTHORIZATION_VOIDED).count()
    # A voided hold stays bound to its key at the gateway.
    return f"{key}:{voided}" if voided else key


def capture_idempotency_key(order: Order) -> str:
    return f"order:{int(order.id)}:capture"


def _fee_bps() -> int:
    try:
        return max(0, int(current_app.config.get("ORDER_FEE_BPS", 0) or 0))
    except (TypeError, ValueError):
        return 0


def _currency() -> str:
    return (str(current_app.config.get("PAYMENTS_CURRENCY") or "usd")).strip().lower()


def _resolve_delivery_method(listing: Listing, requested) -> str:
    methods = listing.delivery_methods()
    if requested is None or str(requested).strip() == "":
        return methods[0] if methods else "in_person"
    method = str(requested).strip().lower()
    if method not in DELIVERY_METHODS:
        raise OrderValidationError(
            f"Unknown delivery method: {method}",
            details={"allowed": list(DELIVERY_METHODS)},
        )
    if methods and method not in methods:
        raise OrderValidationError(
            "This listing does not offer that delivery method",
            details={"allowed": methods},
        )
    return method


def _order_payload(order: Order, **extra) -> dict:
    payload = {"order": order.to_dict()}
    payload.update(extra)
    return payload


@order_action
def create_order(listing_id, buyer_id, delivery_method=None, rental_days=None) -> dict:
    buyer = _require_actor_id(buyer_id)
    lid = _parse_id(listing_id, "Listing id")
    listing = db.session.get(Listing, lid)
    if listing is None:
        raise OrderNotFoundError("Listing not found")
    if not listing.is_active():
        raise OrderValidationError("This listing is no longer available")
    if (listing.seller_id or "") == buyer:
        raise OrderValidationError("You cannot order your own listing")

    open_order = (
        Order.query.filter(
            Order.listing_id == lid,
            Order.buyer_id == buyer,
            Order.state.notin_(tuple(OrderState.TERMINAL)),
        )
        .order_by(Order.id.asc())
        .first()
    )
    if open_order is not None:
        raise OrderValidationError(
            "You already have an open order for this listing",
            order_id=open_order.id,
        )

    method = _resolve_delivery_method(listing, delivery_method)
    if listing.is_rental:
        days = default_rental_days(listing) if rental_days is None else rental_days
        quote = quote_rental(listing, days, fee_bps=_fee_bps())
        order_type = "rent"
    else:
        if rental_days is not None:
            raise OrderValidationError("Rental days only apply to rental listings")
        quote = quote_purchase(listing, 1, fee_bps=_fee_bps())
        order_type = "buy"

    now = get_clock().now()
    order = Order(
        listing_id=lid,
        buyer_id=buyer,
        seller_id=listing.seller_id,
        type=order_type,
        quantity=1,
        rental_days=quote.rental_days,
        subtotal_cents=quote.subtotal_cents,
        deposit_cents=quote.deposit_cents,
        fees_cents=quote.fees_cents,
        total_cents=quote.total_cents,
        currency=_currency(),
        state=OrderState.INITIATED,
        delivery_method=method,
        created_at=now,
        updated_at=now,
        updated_by=buyer,
    )
    db.session.add(order)
    db.session.flush()

    thread = Thread(order_id=order.id, buyer_id=buyer, seller_id=listing.seller_id, is_anonymous=True, created_at=now)
    db.session.add(thread)
    append_event(
        order.id,
        "created",
        actor=buyer,
        created_at=now,
        from_state=None,
        to_state=OrderState.INITIATED,
        data={
            "listing_id": lid,
            "type": order_type,
            "rental_days": quote.rental_days,
            "total_cents": quote.total_cents,
            "delivery_method": method,
        },
    )
    db.session.commit()
    _log("order_created", order_id=int(order.id), listing_id=lid, total_cents=int(order.total_cents))
    return _order_payload(order, thread=thread.to_dict())


@order_action
def create_payment_intent(order_id, buyer_id) -> dict:
    order = _load_order(order_id)
    buyer = _require_actor_id(buyer_id)

    if order.state == OrderState.SELLER_ACCEPT and order.stripe_payment_intent_id:
        require_actor(order, ActorRole.BUYER, buyer)
        provider = _provider(order.id)
        try:
            snap = provider.retrieve(order.stripe_payment_intent_id)
        except PaymentProviderError as exc:
            raise _gateway_error(exc, order_id=order.id, operation="authorize")
        return _order_payload(
            order,
            payment_intent_id=order.stripe_payment_intent_id,
            client_secret=snap.client_secret,
            reused=True,
        )

    now = get_clock().now()
    check_transition(order, "authorize", buyer, now=now)
    provider = _provider(order.id)
    total = int(order.total_cents or 0)
    try:
        auth = provider.authorize(
            amount_cents=total,
            currency=order.currency or _currency(),
            metadata={
                "order_id": str(order.id),
                "listing_id": str(order.listing_id),
                "buyer_id": order.buyer_id,
                "seller_id": order.seller_id,
            },
            idempotency_key=authorize_idempotency_key(order),
        )
    except PaymentProviderError as exc:
        raise _gateway_error(exc, order_id=order.id, operation="authorize")

    oid = int(order.id)
    try:
        order = apply_transition(
            order,
            "authorize",
            actor_id=buyer,
            changes={"stripe_payment_intent_id": auth.intent_id},
            event_data={
                "payment_intent_id": auth.intent_id,
                "amount_cents": total,
                "currency": auth.currency,
                "provider": auth.provider,
            },
            guards=(Order.total_cents == total,),
        )
    except ConcurrencyConflictError:
        current = db.session.get(Order, oid)
        if current is None or current.stripe_payment_intent_id != auth.intent_id:
            _void_unused_authorization(provider, auth, order_id=oid, actor_id=buyer)
            raise
        order = current

    return _order_payload(
        order,
        payment_intent_id=auth.intent_id,
        client_secret=auth.client_secret,
        reused=False,
    )


def _void_unused_authorization(provider, auth, *, order_id: int, actor_id: str) -> None:
    """Cancel a hold that was placed but never stored on the order."""
    try:
        provider.void(auth.intent_id, reason="duplicate")
    except PaymentProviderError as exc:
        raise _gateway_error(exc, order_id=order_id, operation="void")
    current = db.session.get(Order, order_id)
    state = current.state if current is not None else None
    append_event(
        order_id,
        AUTHORIZATION_VOIDED,
        actor=actor_id,
        created_at=get_clock().now(),
        from_state=state,
        to_state=state,
        data={"payment_intent_id": auth.intent_id, "amount_cents": int(auth.amount_cents), "reason": "order_changed"},
    )
    db.session.commit()
    _log("unused_authorization_voided", order_id=order_id, payment_intent_id=auth.intent_id)


@order_action
def accept_order(order_id, seller_id) -> dict:
    order = _load_order(order_id)
    order = apply_transition(order, "accept", actor_id=_require_actor_id(seller_id))
    return _order_payload(order)


@order_action
def reject_order(order_id, seller_id, reason=None) -> dict:
    order = _load_order(order_id)
    seller = _require_actor_id(seller_id)
    clock = get_clock()
    check_transition(order, "reject", seller, now=clock.now())

    oid = int(order.id)
    cancel_reason = (str(reason).strip() if reason else "")[:240] or None
    intent_id = order.stripe_payment_intent_id
    voiding = bool(intent_id) and is_enabled("payments.void_on_reject", True)
    provider = _provider(oid) if voiding else None

    # Runs with the cancellation written but not committed, so a concurrent
    # accept either wins before any void or waits and then finds it cancelled.
    def _void_hold():
        if provider is None:
            return
        try:
            provider.void(intent_id, reason="abandoned")
        except PaymentProviderError as exc:
            raise _gateway_error(exc, order_id=oid, operation="void")

    order = apply_transition(
        order,
        "reject",
        actor_id=seller,
        changes={"cancel_reason": cancel_reason},
        event_data={"reason": cancel_reason, "payment_intent_id": intent_id, "voided": voiding},
        clock=clock,
        before_commit=_void_hold,
    )
    return _order_payload(order, voided=voiding)


@order_action
def mark_delivered(order_id, seller_id, proof_path, notes=None) -> dict:
    order = _load_order(order_id)
    seller = _require_actor_id(seller_id)
    check_transition(order, "mark_delivered", seller, now=get_clock().now())
    proof = (str(proof_path).strip() if proof_path is not None else "")
    if not proof:
        raise OrderValidationError("Delivery proof is required", order_id=order.id)
    if len(proof) > 1024:
        raise OrderValidationError("Delivery proof path is too long", order_id=order.id)
    clean_notes = (str(notes).strip() if notes else "") or None

    order = apply_transition(
        order,
        "mark_delivered",
        actor_id=seller,
        changes={"delivery_proof_path": proof, "delivery_notes": clean_notes},
        event_data={"proof_path": proof, "has_notes": bool(clean_notes)},
    )
    return _order_payload(order)


def _capture_and_complete(order: Order, action: str, actor_id: str) -> Order:
    clock = get_clock()
    check_transition(order, action, actor_id, now=clock.now())

    provider = _provider(order.id)
    intent_id = order.stripe_payment_intent_id
    already_captured = False
    try:
        captured = provider.capture(intent_id, idempotency_key=capture_idempotency_key(order))
        captured_cents = int(captured.captured_amount_cents)
    except PaymentAlreadyCapturedError as exc:
        already_captured = True
        captured_cents = int(exc.captured_amount_cents)
    except PaymentProviderError as exc:
        raise _gateway_error(exc, order_id=order.id, operation="capture")

    data = {"payment_intent_id": intent_id, "captured_amount_cents": captured_cents}
    if already_captured:
        data["already_captured"] = True
    return apply_transition(order, action, actor_id=actor_id, event_data=data, clock=clock)


@order_action
def confirm_delivery(order_id, buyer_id) -> dict:
    order = _load_order(order_id)
    order = _capture_and_complete(order, "confirm", _require_actor_id(buyer_id))
    return _order_payload(order)


@order_action
def auto_release_order(order_id) -> dict:
    order = _load_order(order_id)
    order = _capture_and_complete(order, "auto_release", SYSTEM_ACTOR)
    return _order_payload(order)


@order_action
def update_rental_period(order_id, buyer_id, days) -> dict:
    order = _load_order(order_id)
    buyer = _require_actor_id(buyer_id)
    require_actor(order, ActorRole.BUYER, buyer)
    if order.type != "rent":
        raise OrderValidationError("Only rental orders have a rental period", order_id=order.id)
    current_state = order.state or ""
    if current_state not in OrderState.RENTAL_EDITABLE:
        raise InvalidOrderStateError(
            f"Rental period cannot change once an order is {current_state or 'unknown'}",
            order_id=order.id,
            details={"state": current_state},
        )

    listing = db.session.get(Listing, int(order.listing_id))
    if listing is None:
        raise OrderNotFoundError("Listing not found", order_id=order.id)
    quote = quote_rental(listing, days, fee_bps=_fee_bps())

    oid = int(order.id)
    previous_total = int(order.total_cents or 0)
    intent_id = order.stripe_payment_intent_id
    adjusting = (
        current_state == OrderState.SELLER_ACCEPT
        and bool(intent_id)
        and quote.total_cents != previous_total
    )
    provider = _provider(oid) if adjusting else None

    # The hold moves only after the new total has been written, so a lost
    # race never reaches the gateway and a gateway failure rolls the row back.
    def _adjust_hold():
        if provider is None:
            return None
        try:
            provider.adjust(intent_id, amount_cents=quote.total_cents)
        except PaymentProviderError as exc:
            raise _gateway_error(exc, order_id=oid, operation="adjust")
        return {"hold_adjusted": True}

    previous = {
        "rental_days": order.rental_days,
        "subtotal_cents": int(order.subtotal_cents or 0),
        "total_cents": previous_total,
    }
    order = apply_order_update(
        order,
        expected_state=current_state,
        values={
            "rental_days": quote.rental_days,
            "subtotal_cents": quote.subtotal_cents,
            "deposit_cents": quote.deposit_cents,
            "fees_cents": quote.fees_cents,
            "total_cents": quote.total_cents,
        },
        event_type="rental_period_updated",
        actor_id=buyer,
        now=get_clock().now(),
        event_data={
            "previous": previous,
            "rental_days": quote.rental_days,
            "subtotal_cents": quote.subtotal_cents,
            "deposit_cents": quote.deposit_cents,
            "total_cents": quote.total_cents,
        },
        guards=(Order.total_cents == previous_total,),
        before_commit=_adjust_hold,
    )
    return _order_payload(order)


@order_action
def get_order(order_id, actor_id) -> dict:
    order = _load_order(order_id)
    if not is_party(order, actor_id):
        raise OrderUnauthorizedError("You are not part of this order", order_id=order.id)
    thread = Thread.query.filter_by(order_id=int(order.id)).first()
    return _order_payload(order, thread=thread.to_dict() if thread else None)


@order_action
def get_order_timeline(order_id, actor_id) -> dict:
    order = _load_order(order_id)
    if not is_party(order, actor_id):
        raise OrderUnauthorizedError("You are not part of this order", order_id=order.id)
    return {"order_id": int(order.id), "state": order.state, "events": [e.to_dict() for e in list_events(order.id)]}


LIST_ROLES = (ActorRole.BUYER, ActorRole.SELLER)
LIST_LIMIT_MAX = 100


@order_action
def list_orders(actor_id, role, state=None, limit=50) -> dict:
    """Orders where the actor is the buyer or the seller, newest first."""
    actor = _require_actor_id(actor_id)
    side = (str(role).strip().lower() if role else "")
    if side not in LIST_ROLES:
        raise OrderValidationError("role must be buyer or seller", details={"allowed": list(LIST_ROLES)})
    try:
        size = int(limit)
    except (TypeError, ValueError):
        raise OrderValidationError("limit must be a number")
    size = max(1, min(size, LIST_LIMIT_MAX))

    column = Order.buyer_id if side == ActorRole.BUYER else Order.seller_id
    q = Order.query.filter(column == actor)
    if state:
        wanted = str(state).strip().lower()
        if wanted not in OrderState.ALL:
            raise OrderValidationError(f"Unknown order state: {wanted}", details={"allowed": list(OrderState.ALL)})
        q = q.filter(Order.state == wanted)
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(size).all()
    return {"role": side, "items": [o.to_dict() for o in rows]}
