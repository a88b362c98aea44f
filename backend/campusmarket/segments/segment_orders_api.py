from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from campusmarket.services import order_actions
from campusmarket.utils.jwt_utils import subject_from_header

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _current_actor_id() -> str | None:
    actor = subject_from_header(request.headers.get("Authorization", ""))
    if actor:
        g.actor_id = actor
    return actor


def _unauthorized():
    return jsonify({"ok": False, "message": "Unauthorized"}), 401


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _respond(result: order_actions.ActionResult, success_status: int = 200):
    return jsonify(result.to_dict()), (success_status if result.ok else result.status_code)


@orders_bp.post("/orders")
def create_order():
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    payload = _payload()
    result = order_actions.create_order(
        payload.get("listing_id"),
        actor,
        delivery_method=payload.get("delivery_method"),
        rental_days=payload.get("rental_days"),
    )
    return _respond(result, 201)


@orders_bp.get("/orders")
def list_orders():
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    result = order_actions.list_orders(
        actor,
        request.args.get("role"),
        state=request.args.get("state"),
        limit=request.args.get("limit", 50),
    )
    return _respond(result)


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    return _respond(order_actions.get_order(order_id, actor))


@orders_bp.get("/orders/<int:order_id>/timeline")
def order_timeline(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    return _respond(order_actions.get_order_timeline(order_id, actor))


@orders_bp.post("/orders/<int:order_id>/payment-intent")
def create_payment_intent(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    return _respond(order_actions.create_payment_intent(order_id, actor))


@orders_bp.post("/orders/<int:order_id>/accept")
def accept_order(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    return _respond(order_actions.accept_order(order_id, actor))


@orders_bp.post("/orders/<int:order_id>/reject")
def reject_order(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    payload = _payload()
    return _respond(order_actions.reject_order(order_id, actor, reason=payload.get("reason")))


@orders_bp.post("/orders/<int:order_id>/deliver")
def mark_delivered(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    payload = _payload()
    result = order_actions.mark_delivered(
        order_id,
        actor,
        payload.get("proof_path"),
        notes=payload.get("notes"),
    )
    return _respond(result)


@orders_bp.post("/orders/<int:order_id>/confirm")
def confirm_delivery(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    return _respond(order_actions.confirm_delivery(order_id, actor))


@orders_bp.patch("/orders/<int:order_id>/rental-period")
def update_rental_period(order_id: int):
    actor = _current_actor_id()
    if not actor:
        return _unauthorized()
    payload = _payload()
    return _respond(order_actions.update_rental_period(order_id, actor, payload.get("days")))
