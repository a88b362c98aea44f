from __future__ import annotations

import unittest

from campusmarket.models import Order, OrderEvent, Thread
from campusmarket.services import order_actions
from campusmarket.services.order_state_machine import AUTO_RELEASE_AFTER

from order_test_support import BUYER, SELLER, STRANGER, OrderTestCase


class PurchaseFlowTestCase(OrderTestCase):
    def test_order_on_25_dollar_listing_starts_initiated(self):
        listing_id = self.make_listing(price_cents=2500)
        result = order_actions.create_order(listing_id, BUYER)
        self.assertTrue(result.ok)
        body = result.to_dict()
        self.assertTrue(body["ok"])
        order = body["order"]
        self.assertEqual(order["state"], "initiated")
        self.assertEqual(order["total_cents"], 2500)
        self.assertEqual(order["subtotal_cents"], 2500)
        self.assertIsNone(order["deposit_cents"])
        self.assertEqual(order["type"], "buy")
        self.assertEqual(order["delivery_method"], "in_person")
        self.assertIsNone(order["stripe_payment_intent_id"])
        self.assertEqual(self.event_types(order["id"]), ["created"])

    def test_order_creates_anonymous_thread(self):
        order_id = self.create_order(self.make_listing())
        thread = Thread.query.filter_by(order_id=order_id).one()
        self.assertEqual(thread.buyer_id, BUYER)
        self.assertEqual(thread.seller_id, SELLER)
        self.assertTrue(thread.is_anonymous)

    def test_payment_intent_moves_order_to_seller_accept(self):
        order_id = self.create_order(self.make_listing(price_cents=2500))
        result = order_actions.create_payment_intent(order_id, BUYER)
        self.assertTrue(result.ok, result.to_dict())
        self.assertTrue(result.data["client_secret"])
        self.assertFalse(result.data["reused"])

        order = self.order(order_id)
        self.assertEqual(order.state, "seller_accept")
        self.assertIsNotNone(order.stripe_payment_intent_id)
        intent = self.payments.intents[order.stripe_payment_intent_id]
        self.assertEqual(intent["amount"], 2500)
        self.assertEqual(intent["status"], "requires_capture")
        self.assertEqual(self.event_types(order_id), ["created", "authorized"])

    def test_payment_intent_is_reused_on_repeat(self):
        order_id = self.create_order(self.make_listing())
        first = order_actions.create_payment_intent(order_id, BUYER)
        second = order_actions.create_payment_intent(order_id, BUYER)
        self.assertTrue(second.ok, second.to_dict())
        self.assertTrue(second.data["reused"])
        self.assertEqual(first.data["payment_intent_id"], second.data["payment_intent_id"])
        self.assertEqual(first.data["client_secret"], second.data["client_secret"])
        self.assertEqual(self.payments.calls["authorize"], 1)
        self.assertEqual(len(self.payments.intents), 1)
        self.assertEqual(self.event_types(order_id), ["created", "authorized"])

    def test_authorize_failure_leaves_order_initiated(self):
        order_id = self.create_order(self.make_listing())
        self.payments.fail_next("authorize")
        result = order_actions.create_payment_intent(order_id, BUYER)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "PAYMENT_GATEWAY_ERROR")
        self.assertEqual(result.status_code, 502)
        order = self.order(order_id)
        self.assertEqual(order.state, "initiated")
        self.assertIsNone(order.stripe_payment_intent_id)
        self.assertEqual(self.event_types(order_id), ["created"])

    def test_only_buyer_can_pay(self):
        order_id = self.create_order(self.make_listing())
        for actor in (SELLER, STRANGER):
            result = order_actions.create_payment_intent(order_id, actor)
            self.assertEqual(result.code, "UNAUTHORIZED")
        self.assertEqual(self.payments.calls["authorize"], 0)

    def test_seller_accepts_and_buyer_cannot(self):
        order_id = self.drive_to("seller_accept")
        denied = order_actions.accept_order(order_id, BUYER)
        self.assertEqual(denied.code, "UNAUTHORIZED")
        self.assertEqual(self.order(order_id).state, "seller_accept")

        accepted = order_actions.accept_order(order_id, SELLER)
        self.assertTrue(accepted.ok)
        self.assertEqual(self.order(order_id).state, "delivering")
        self.assertEqual(self.event_types(order_id)[-1], "accepted")

    def test_reject_in_delivering_is_invalid_state(self):
        order_id = self.drive_to("delivering")
        before = self.order(order_id).to_dict()
        events_before = self.event_types(order_id)

        result = order_actions.reject_order(order_id, SELLER)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "INVALID_STATE")
        self.assertEqual(result.status_code, 409)
        self.assertEqual(self.order(order_id).to_dict(), before)
        self.assertEqual(self.event_types(order_id), events_before)
        self.assertEqual(self.payments.calls["void"], 0)

    def test_reject_voids_authorization(self):
        order_id = self.drive_to("seller_accept")
        intent_id = self.order(order_id).stripe_payment_intent_id
        self.clock.advance(hours=2)

        result = order_actions.reject_order(order_id, SELLER, reason="Sold in person already")
        self.assertTrue(result.ok, result.to_dict())
        self.assertTrue(result.data["voided"])

        order = self.order(order_id)
        self.assertEqual(order.state, "cancelled")
        self.assertEqual(order.cancel_reason, "Sold in person already")
        self.assertEqual(order.cancelled_at, self.clock.now())
        self.assertEqual(self.payments.intents[intent_id]["status"], "canceled")
        self.assertEqual(self.event_types(order_id)[-1], "cancelled")

    def test_reject_without_void_flag_keeps_authorization(self):
        self.app.config["FEATURE_FLAGS"] = {"payments.void_on_reject": False}
        order_id = self.drive_to("seller_accept")
        intent_id = self.order(order_id).stripe_payment_intent_id
        result = order_actions.reject_order(order_id, SELLER)
        self.assertTrue(result.ok)
        self.assertFalse(result.data["voided"])
        self.assertEqual(self.payments.intents[intent_id]["status"], "requires_capture")

    def test_void_failure_keeps_order_open(self):
        order_id = self.drive_to("seller_accept")
        self.payments.fail_next("void")
        result = order_actions.reject_order(order_id, SELLER)
        self.assertEqual(result.code, "PAYMENT_GATEWAY_ERROR")
        self.assertEqual(self.order(order_id).state, "seller_accept")

    def test_mark_delivered_requires_proof(self):
        order_id = self.drive_to("delivering")
        for proof in (None, "", "   "):
            result = order_actions.mark_delivered(order_id, SELLER, proof)
            self.assertEqual(result.code, "VALIDATION_ERROR")
        self.assertEqual(self.order(order_id).state, "delivering")

    def test_mark_delivered_checks_actor_and_state_before_proof(self):
        order_id = self.drive_to("delivering")
        self.assertEqual(order_actions.mark_delivered(order_id, STRANGER, "").code, "UNAUTHORIZED")
        self.assertEqual(order_actions.mark_delivered(order_id, BUYER, None).code, "UNAUTHORIZED")

        early = self.drive_to("seller_accept", listing_id=self.make_listing(title="Desk lamp"))
        self.assertEqual(order_actions.mark_delivered(early, SELLER, "").code, "INVALID_STATE")

    def test_mark_delivered_sets_deadline_seven_days_out(self):
        order_id = self.drive_to("delivering")
        self.clock.advance(days=1, minutes=17)
        result = order_actions.mark_delivered(order_id, SELLER, "proofs/handoff.jpg", notes="Met at library")
        self.assertTrue(result.ok, result.to_dict())

        order = self.order(order_id)
        self.assertEqual(order.state, "delivered_pending_confirm")
        self.assertEqual(order.delivered_at, self.clock.now())
        self.assertEqual((order.auto_release_at - order.delivered_at).total_seconds(), 604800)
        self.assertEqual(order.auto_release_at, order.delivered_at + AUTO_RELEASE_AFTER)
        self.assertEqual(order.delivery_proof_path, "proofs/handoff.jpg")
        self.assertEqual(order.delivery_notes, "Met at library")

    def test_confirm_twice_captures_once(self):
        order_id = self.drive_to("delivered_pending_confirm")
        first = order_actions.confirm_delivery(order_id, BUYER)
        self.assertTrue(first.ok, first.to_dict())
        second = order_actions.confirm_delivery(order_id, BUYER)
        self.assertFalse(second.ok)
        self.assertEqual(second.code, "INVALID_STATE")
        self.assertEqual(self.payments.calls["capture"], 1)

        order = self.order(order_id)
        self.assertEqual(order.state, "completed")
        self.assertEqual(order.confirmed_at, self.clock.now())
        self.assertEqual(self.event_types(order_id).count("confirmed"), 1)

    def test_capture_failure_leaves_order_pending_confirm(self):
        order_id = self.drive_to("delivered_pending_confirm")
        self.payments.fail_next("capture")
        result = order_actions.confirm_delivery(order_id, BUYER)
        self.assertEqual(result.code, "PAYMENT_GATEWAY_ERROR")
        self.assertEqual(self.order(order_id).state, "delivered_pending_confirm")
        self.assertNotIn("confirmed", self.event_types(order_id))

    def test_confirm_reconciles_intent_captured_elsewhere(self):
        order_id = self.drive_to("delivered_pending_confirm")
        intent_id = self.order(order_id).stripe_payment_intent_id
        self.payments.capture(intent_id)

        result = order_actions.confirm_delivery(order_id, BUYER)
        self.assertTrue(result.ok, result.to_dict())
        self.assertEqual(self.order(order_id).state, "completed")
        event = OrderEvent.query.filter_by(order_id=order_id, type="confirmed").one()
        self.assertTrue(event.data_dict()["already_captured"])

    def test_seller_cannot_confirm(self):
        order_id = self.drive_to("delivered_pending_confirm")
        result = order_actions.confirm_delivery(order_id, SELLER)
        self.assertEqual(result.code, "UNAUTHORIZED")
        self.assertEqual(self.payments.calls["capture"], 0)


class TerminalStateTestCase(OrderTestCase):
    def _attempt_everything(self, order_id: int) -> list:
        return [
            order_actions.create_payment_intent(order_id, BUYER),
            order_actions.accept_order(order_id, SELLER),
            order_actions.reject_order(order_id, SELLER),
            order_actions.mark_delivered(order_id, SELLER, "proofs/again.png"),
            order_actions.confirm_delivery(order_id, BUYER),
            order_actions.auto_release_order(order_id),
        ]

    def test_completed_order_never_leaves_completed(self):
        order_id = self.drive_to("completed")
        self.clock.advance(days=30)
        for result in self._attempt_everything(order_id):
            self.assertFalse(result.ok)
            self.assertEqual(result.code, "INVALID_STATE")
        self.assertEqual(self.order(order_id).state, "completed")

    def test_cancelled_order_never_leaves_cancelled(self):
        order_id = self.drive_to("cancelled")
        for result in self._attempt_everything(order_id):
            self.assertFalse(result.ok)
            self.assertIn(result.code, ("INVALID_STATE", "UNAUTHORIZED"))
        self.assertEqual(self.order(order_id).state, "cancelled")

    def test_money_stays_consistent_through_lifecycle(self):
        self.app.config["ORDER_FEE_BPS"] = 250
        order_id = self.create_order(self.make_listing(price_cents=1999))
        self.assertTrue(self.order(order_id).money_is_consistent())
        for step in (
            lambda: order_actions.create_payment_intent(order_id, BUYER),
            lambda: order_actions.accept_order(order_id, SELLER),
            lambda: order_actions.mark_delivered(order_id, SELLER, "proofs/a.png"),
            lambda: order_actions.confirm_delivery(order_id, BUYER),
        ):
            self.assertTrue(step().ok)
            self.assertTrue(self.order(order_id).money_is_consistent())


class CreateOrderRulesTestCase(OrderTestCase):
    def test_missing_listing_is_not_found(self):
        result = order_actions.create_order(9999, BUYER)
        self.assertEqual(result.code, "NOT_FOUND")
        self.assertEqual(result.status_code, 404)

    def test_inactive_listing_is_rejected(self):
        listing_id = self.make_listing(status="sold")
        result = order_actions.create_order(listing_id, BUYER)
        self.assertEqual(result.code, "VALIDATION_ERROR")

    def test_seller_cannot_buy_own_listing(self):
        result = order_actions.create_order(self.make_listing(), SELLER)
        self.assertEqual(result.code, "VALIDATION_ERROR")
        self.assertEqual(Order.query.count(), 0)

    def test_one_open_order_per_buyer_and_listing(self):
        listing_id = self.make_listing()
        self.create_order(listing_id)
        duplicate = order_actions.create_order(listing_id, BUYER)
        self.assertEqual(duplicate.code, "VALIDATION_ERROR")
        other_buyer = order_actions.create_order(listing_id, STRANGER)
        self.assertTrue(other_buyer.ok)

    def test_new_order_allowed_after_cancellation(self):
        listing_id = self.make_listing()
        self.drive_to("cancelled", listing_id=listing_id)
        again = order_actions.create_order(listing_id, BUYER)
        self.assertTrue(again.ok, again.to_dict())

    def test_delivery_method_must_be_offered(self):
        listing_id = self.make_listing()
        result = order_actions.create_order(listing_id, BUYER, delivery_method="ticket_transfer")
        self.assertEqual(result.code, "VALIDATION_ERROR")
        ok = order_actions.create_order(listing_id, BUYER, delivery_method="mail")
        self.assertEqual(ok.data["order"]["delivery_method"], "mail")

    def test_platform_fee_is_added_to_total(self):
        self.app.config["ORDER_FEE_BPS"] = 250
        order_id = self.create_order(self.make_listing(price_cents=2500))
        order = self.order(order_id)
        self.assertEqual(order.fees_cents, 63)
        self.assertEqual(order.total_cents, 2563)

    def test_anonymous_buyer_is_unauthorized(self):
        result = order_actions.create_order(self.make_listing(), "")
        self.assertEqual(result.code, "UNAUTHORIZED")


class OrderReadTestCase(OrderTestCase):
    def test_parties_can_read_order(self):
        order_id = self.create_order(self.make_listing())
        for actor in (BUYER, SELLER):
            result = order_actions.get_order(order_id, actor)
            self.assertTrue(result.ok)
            self.assertEqual(result.data["order"]["id"], order_id)
            self.assertEqual(result.data["thread"]["order_id"], order_id)

    def test_stranger_cannot_read_order(self):
        order_id = self.create_order(self.make_listing())
        self.assertEqual(order_actions.get_order(order_id, STRANGER).code, "UNAUTHORIZED")
        self.assertEqual(order_actions.get_order_timeline(order_id, STRANGER).code, "UNAUTHORIZED")

    def test_timeline_lists_events_in_order(self):
        order_id = self.drive_to("completed")
        result = order_actions.get_order_timeline(order_id, SELLER)
        self.assertTrue(result.ok)
        events = result.data["events"]
        self.assertEqual(
            [e["type"] for e in events],
            ["created", "authorized", "accepted", "delivered", "confirmed"],
        )
        self.assertEqual(events[0]["from_state"], None)
        self.assertEqual(events[-1]["to_state"], "completed")
        self.assertEqual(events[2]["actor"], SELLER)

    def test_bad_order_id_is_validation_error(self):
        result = order_actions.get_order("abc", BUYER)
        self.assertEqual(result.code, "VALIDATION_ERROR")


class OrderListTestCase(OrderTestCase):
    def _three_orders(self) -> list[int]:
        ids = []
        for title in ("Lab coat", "Chem goggles", "Stats notes"):
            ids.append(self.create_order(self.make_listing(title=title)))
            self.clock.advance(minutes=5)
        return ids

    def test_seller_sees_orders_newest_first(self):
        ids = self._three_orders()
        result = order_actions.list_orders(SELLER, "seller")
        self.assertTrue(result.ok, result.to_dict())
        self.assertEqual([o["id"] for o in result.data["items"]], list(reversed(ids)))
        self.assertEqual(result.data["role"], "seller")

    def test_buyer_sees_only_own_orders(self):
        ids = self._three_orders()
        other = self.create_order(self.make_listing(title="Bike lock"), buyer="buyer-91ab")
        result = order_actions.list_orders(BUYER, "buyer")
        listed = [o["id"] for o in result.data["items"]]
        self.assertEqual(listed, list(reversed(ids)))
        self.assertNotIn(other, listed)
        self.assertEqual(order_actions.list_orders(BUYER, "seller").data["items"], [])
        self.assertEqual(order_actions.list_orders(STRANGER, "buyer").data["items"], [])

    def test_state_filter_and_limit(self):
        ids = self._three_orders()
        self.assertTrue(order_actions.create_payment_intent(ids[0], BUYER).ok)
        pending = order_actions.list_orders(SELLER, "seller", state="seller_accept")
        self.assertEqual([o["id"] for o in pending.data["items"]], [ids[0]])
        limited = order_actions.list_orders(SELLER, "seller", limit=2)
        self.assertEqual(len(limited.data["items"]), 2)

    def test_bad_arguments(self):
        self.assertEqual(order_actions.list_orders(BUYER, "admin").code, "VALIDATION_ERROR")
        self.assertEqual(order_actions.list_orders(BUYER, None).code, "VALIDATION_ERROR")
        self.assertEqual(order_actions.list_orders(BUYER, "buyer", state="shipped").code, "VALIDATION_ERROR")
        self.assertEqual(order_actions.list_orders(BUYER, "buyer", limit="many").code, "VALIDATION_ERROR")
        self.assertEqual(order_actions.list_orders("", "buyer").code, "UNAUTHORIZED")


if __name__ == "__main__":
    unittest.main()
