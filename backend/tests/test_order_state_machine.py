from __future__ import annotations

import unittest
from datetime import timedelta
from unittest import mock

import sqlalchemy as sa

from campusmarket.extensions import db
from campusmarket.models import Order, OrderEvent
from campusmarket.services.order_errors import (
    ConcurrencyConflictError,
    InvalidOrderStateError,
    OrderUnauthorizedError,
    OrderValidationError,
)
from campusmarket.services.order_state_machine import (
    TRANSITIONS,
    OrderState,
    apply_transition,
    check_transition,
)

from order_test_support import BUYER, SELLER, OrderTestCase


class TransitionTableTestCase(unittest.TestCase):
    def test_terminal_states_have_no_exits(self):
        for rule in TRANSITIONS.values():
            self.assertNotIn(rule.from_state, OrderState.TERMINAL)

    def test_every_state_is_known(self):
        for rule in TRANSITIONS.values():
            self.assertIn(rule.from_state, OrderState.ALL)
            self.assertIn(rule.to_state, OrderState.ALL)

    def test_event_types(self):
        self.assertEqual(
            {action: rule.event_type for action, rule in TRANSITIONS.items()},
            {
                "authorize": "authorized",
                "accept": "accepted",
                "reject": "cancelled",
                "mark_delivered": "delivered",
                "confirm": "confirmed",
                "auto_release": "auto_released",
            },
        )


class ApplyTransitionTestCase(OrderTestCase):
    def test_unknown_action(self):
        order = self.order(self.create_order(self.make_listing()))
        with self.assertRaises(OrderValidationError):
            check_transition(order, "refund", BUYER)

    def test_wrong_actor_raises_before_state_check(self):
        order = self.order(self.drive_to("delivering"))
        with self.assertRaises(OrderUnauthorizedError):
            check_transition(order, "accept", BUYER)

    def test_one_event_per_transition(self):
        order_id = self.drive_to("seller_accept")
        before = OrderEvent.query.filter_by(order_id=order_id).count()
        apply_transition(self.order(order_id), "accept", actor_id=SELLER)
        self.assertEqual(OrderEvent.query.filter_by(order_id=order_id).count(), before + 1)
        event = OrderEvent.query.filter_by(order_id=order_id).order_by(OrderEvent.id.desc()).first()
        self.assertEqual((event.from_state, event.to_state), ("seller_accept", "delivering"))
        self.assertEqual(event.actor, SELLER)
        self.assertEqual(event.created_at, self.clock.now())

    def test_stale_state_is_concurrency_conflict(self):
        order_id = self.drive_to("seller_accept")
        order = self.order(order_id)
        db.session.execute(
            sa.update(Order)
            .where(Order.id == order_id)
            .values(state=OrderState.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        with self.assertRaises(ConcurrencyConflictError):
            apply_transition(order, "accept", actor_id=SELLER)
        self.assertNotIn("accepted", self.event_types(order_id))
        self.assertEqual(self.order(order_id).state, "seller_accept")

    def test_auto_release_waits_for_deadline(self):
        order_id = self.drive_to("delivered_pending_confirm")
        order = self.order(order_id)
        self.clock.advance(days=6, hours=23, minutes=59)
        with self.assertRaises(InvalidOrderStateError):
            check_transition(order, "auto_release", "system", now=self.clock.now())
        self.clock.set(order.auto_release_at)
        rule = check_transition(order, "auto_release", "system", now=self.clock.now())
        self.assertEqual(rule.to_state, OrderState.COMPLETED)

    def test_auto_release_is_system_only(self):
        order_id = self.drive_to("delivered_pending_confirm")
        self.clock.advance(days=8)
        with self.assertRaises(OrderUnauthorizedError):
            check_transition(self.order(order_id), "auto_release", BUYER)

    def test_delivery_deadline_cannot_be_overridden(self):
        order_id = self.drive_to("delivering")
        bogus = self.clock.now() + timedelta(days=1)
        apply_transition(
            self.order(order_id),
            "mark_delivered",
            actor_id=SELLER,
            changes={"delivery_proof_path": "proofs/x.png", "auto_release_at": bogus},
        )
        order = self.order(order_id)
        self.assertEqual(order.auto_release_at, self.clock.now() + timedelta(days=7))


class BeforeCommitHookTestCase(OrderTestCase):
    def test_hook_result_is_merged_into_event(self):
        order_id = self.drive_to("seller_accept")
        apply_transition(
            self.order(order_id),
            "accept",
            actor_id=SELLER,
            event_data={"note": "on my way"},
            before_commit=lambda: {"checked": True},
        )
        event = OrderEvent.query.filter_by(order_id=order_id).order_by(OrderEvent.id.desc()).first()
        self.assertEqual(event.data_dict(), {"note": "on my way", "checked": True})

    def test_hook_failure_rolls_back_update(self):
        order_id = self.drive_to("seller_accept")

        def boom():
            raise RuntimeError("gateway down")

        with self.assertRaises(RuntimeError):
            apply_transition(self.order(order_id), "accept", actor_id=SELLER, before_commit=boom)
        self.assertEqual(self.order(order_id).state, "seller_accept")
        self.assertNotIn("accepted", self.event_types(order_id))

    def test_hook_is_skipped_when_update_loses(self):
        order_id = self.drive_to("seller_accept")
        order = self.order(order_id)
        db.session.execute(
            sa.update(Order)
            .where(Order.id == order_id)
            .values(state=OrderState.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        hook = mock.Mock(return_value=None)
        with self.assertRaises(ConcurrencyConflictError):
            apply_transition(order, "accept", actor_id=SELLER, before_commit=hook)
        hook.assert_not_called()


class EventLogAppendOnlyTestCase(OrderTestCase):
    def test_events_cannot_be_edited(self):
        order_id = self.create_order(self.make_listing())
        event = OrderEvent.query.filter_by(order_id=order_id).one()
        event.actor = "someone-else"
        with self.assertRaises(RuntimeError):
            db.session.commit()
        db.session.rollback()

    def test_events_cannot_be_deleted(self):
        order_id = self.create_order(self.make_listing())
        event = OrderEvent.query.filter_by(order_id=order_id).one()
        db.session.delete(event)
        with self.assertRaises(RuntimeError):
            db.session.commit()
        db.session.rollback()


if __name__ == "__main__":
    unittest.main()
