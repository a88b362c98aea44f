from __future__ import annotations

import unittest
from unittest.mock import patch

import sqlalchemy as sa

from campusmarket.extensions import db
from campusmarket.models import Order
from campusmarket.services import order_actions
from campusmarket.services.order_pricing import quote_rental

from order_test_support import BUYER, SELLER, OrderTestCase


class PaymentConsistencyTestCase(OrderTestCase):
    def _live_holds(self) -> list[int]:
        return sorted(
            int(i["amount"]) for i in self.payments.intents.values() if i["status"] == "requires_capture"
        )

    def test_rental_change_losing_to_acceptance_leaves_hold_alone(self):
        order_id = self.drive_to("seller_accept", listing_id=self.make_rental_listing())
        intent_id = self.order(order_id).stripe_payment_intent_id

        def accept_then_quote(*args, **kwargs):
            self.assertTrue(order_actions.accept_order(order_id, SELLER).ok)
            return quote_rental(*args, **kwargs)

        with patch("campusmarket.services.order_actions.quote_rental", side_effect=accept_then_quote):
            result = order_actions.update_rental_period(order_id, BUYER, 10)

        self.assertEqual(result.code, "CONCURRENCY_CONFLICT")
        self.assertEqual(self.payments.calls["adjust"], 0)
        order = self.order(order_id)
        self.assertEqual(order.state, "delivering")
        self.assertEqual(order.total_cents, 2500)
        self.assertEqual(self.payments.intents[intent_id]["amount"], order.total_cents)

        self.assertTrue(order_actions.mark_delivered(order_id, SELLER, "proofs/calc.jpg").ok)
        self.assertTrue(order_actions.confirm_delivery(order_id, BUYER).ok)
        self.assertEqual(self.payments.intents[intent_id]["amount_received"], 2500)

    def test_adjusted_hold_is_recorded_on_the_event(self):
        order_id = self.drive_to("seller_accept", listing_id=self.make_rental_listing())
        self.assertTrue(order_actions.update_rental_period(order_id, BUYER, 4).ok)
        timeline = order_actions.get_order_timeline(order_id, BUYER).data["events"]
        self.assertEqual(timeline[-1]["type"], "rental_period_updated")
        self.assertTrue(timeline[-1]["data"]["hold_adjusted"])

    def test_authorization_losing_to_rental_change_is_voided(self):
        order_id = self.create_order(self.make_rental_listing(), rental_days=3)
        real_authorize = self.payments.authorize

        def authorize_during_edit(**kwargs):
            auth = real_authorize(**kwargs)
            if self.payments.calls["authorize"] == 1:
                self.assertTrue(order_actions.update_rental_period(order_id, BUYER, 5).ok)
            return auth

        with patch.object(self.payments, "authorize", side_effect=authorize_during_edit):
            first = order_actions.create_payment_intent(order_id, BUYER)
            second = order_actions.create_payment_intent(order_id, BUYER)

        self.assertEqual(first.code, "CONCURRENCY_CONFLICT")
        self.assertTrue(second.ok, second.to_dict())
        self.assertEqual(self._live_holds(), [4500])

        order = self.order(order_id)
        self.assertEqual(order.state, "seller_accept")
        self.assertEqual(order.total_cents, 4500)
        self.assertEqual(order.stripe_payment_intent_id, second.data["payment_intent_id"])
        self.assertIn("authorization_voided", self.event_types(order_id))

    def test_voided_hold_is_not_replayed_for_the_same_total(self):
        order_id = self.create_order(self.make_rental_listing(), rental_days=3)
        real_authorize = self.payments.authorize

        def authorize_during_edit(**kwargs):
            auth = real_authorize(**kwargs)
            if self.payments.calls["authorize"] == 1:
                self.assertTrue(order_actions.update_rental_period(order_id, BUYER, 5).ok)
            return auth

        with patch.object(self.payments, "authorize", side_effect=authorize_during_edit):
            first = order_actions.create_payment_intent(order_id, BUYER)
        self.assertFalse(first.ok)

        self.assertTrue(order_actions.update_rental_period(order_id, BUYER, 3).ok)
        result = order_actions.create_payment_intent(order_id, BUYER)
        self.assertTrue(result.ok, result.to_dict())
        intent = self.payments.intents[result.data["payment_intent_id"]]
        self.assertEqual(intent["status"], "requires_capture")
        self.assertEqual(intent["amount"], 3500)
        self.assertEqual(self._live_holds(), [3500])

    def test_reject_losing_to_acceptance_does_not_void(self):
        order_id = self.drive_to("seller_accept")
        intent_id = self.order(order_id).stripe_payment_intent_id

        def accept_then_provider():
            self.assertTrue(order_actions.accept_order(order_id, SELLER).ok)
            return self.payments

        with patch(
            "campusmarket.services.order_actions.get_payments_provider",
            side_effect=accept_then_provider,
        ):
            result = order_actions.reject_order(order_id, SELLER)

        self.assertFalse(result.ok)
        self.assertEqual(result.code, "INVALID_STATE")
        self.assertEqual(self.payments.calls["void"], 0)
        self.assertEqual(self.payments.intents[intent_id]["status"], "requires_capture")
        self.assertEqual(self.order(order_id).state, "delivering")

    def test_reject_on_stale_row_is_conflict_without_void(self):
        order_id = self.drive_to("seller_accept")
        intent_id = self.order(order_id).stripe_payment_intent_id
        db.session.execute(
            sa.update(Order)
            .where(Order.id == order_id)
            .values(state="delivering")
            .execution_options(synchronize_session=False)
        )

        result = order_actions.reject_order(order_id, SELLER)

        self.assertEqual(result.code, "CONCURRENCY_CONFLICT")
        self.assertEqual(self.payments.calls["void"], 0)
        self.assertEqual(self.payments.intents[intent_id]["status"], "requires_capture")
        self.assertNotIn("cancelled", self.event_types(order_id))


if __name__ == "__main__":
    unittest.main()
