from __future__ import annotations

import secrets
from collections import Counter

from campusmarket.integrations.payments.base import (
    PaymentAlreadyCapturedError,
    PaymentAuthorizeResult,
    PaymentCaptureResult,
    PaymentIntentNotFoundError,
    PaymentIntentSnapshot,
    PaymentProviderError,
    PaymentsProvider,
    PaymentVoidResult,
)


class MockPaymentsProvider(PaymentsProvider):
    """In-memory gateway that follows the Stripe manual-capture lifecycle.

    ``calls`` counts every invocation per operation, including ones that
    fail, and ``fail_next`` queues an exception for the next call of an
    operation.
    """

    name = "mock"

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.calls: Counter = Counter()
        self._idempotent: dict[tuple[str, str], object] = {}
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, operation: str, exc: Exception | None = None) -> None:
        self._failures.setdefault(operation, []).append(
            exc or PaymentProviderError(f"MOCK_{operation.upper()}_FAILED")
        )

    def _maybe_fail(self, operation: str) -> None:
        queued = self._failures.get(operation) or []
        if queued:
            raise queued.pop(0)

    def _intent(self, intent_id: str) -> dict:
        intent = self.intents.get((intent_id or "").strip())
        if intent is None:
            raise PaymentIntentNotFoundError(f"PAYMENT_INTENT_NOT_FOUND:{intent_id}")
        return intent

    def _snapshot(self, intent: dict) -> PaymentIntentSnapshot:
        return PaymentIntentSnapshot(
            intent_id=intent["id"],
            client_secret=intent["client_secret"],
            amount_cents=int(intent["amount"]),
            amount_received_cents=int(intent["amount_received"]),
            currency=intent["currency"],
            status=intent["status"],
            provider=self.name,
            raw=dict(intent),
        )

    def authorize(self, *, amount_cents, currency, metadata=None, idempotency_key=None) -> PaymentAuthorizeResult:
        self.calls["authorize"] += 1
        self._maybe_fail("authorize")
        if idempotency_key and ("authorize", idempotency_key) in self._idempotent:
            return self._idempotent[("authorize", idempotency_key)]
        if int(amount_cents) <= 0:
            raise PaymentProviderError("MOCK_AUTHORIZE_FAILED:amount must be positive")
        intent_id = f"pi_mock_{secrets.token_hex(8)}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_{secrets.token_hex(6)}",
            "amount": int(amount_cents),
            "amount_received": 0,
            "currency": (currency or "usd").lower(),
            "status": "requires_capture",
            "metadata": dict(metadata or {}),
        }
        self.intents[intent_id] = intent
        result = PaymentAuthorizeResult(
            intent_id=intent_id,
            client_secret=intent["client_secret"],
            amount_cents=int(amount_cents),
            currency=intent["currency"],
            status=intent["status"],
            provider=self.name,
            raw=dict(intent),
        )
        if idempotency_key:
            self._idempotent[("authorize", idempotency_key)] = result
        return result

    def capture(self, intent_id, *, idempotency_key=None) -> PaymentCaptureResult:
        self.calls["capture"] += 1
        self._maybe_fail("capture")
        if idempotency_key and ("capture", idempotency_key) in self._idempotent:
            return self._idempotent[("capture", idempotency_key)]
        intent = self._intent(intent_id)
        if intent["status"] == "succeeded":
            raise PaymentAlreadyCapturedError(intent["id"], intent["amount_received"])
        if intent["status"] != "requires_capture":
            raise PaymentProviderError(f"MOCK_CAPTURE_FAILED:intent is {intent['status']}")
        intent["status"] = "succeeded"
        intent["amount_received"] = int(intent["amount"])
        result = PaymentCaptureResult(
            intent_id=intent["id"],
            captured_amount_cents=int(intent["amount_received"]),
            status=intent["status"],
            provider=self.name,
            raw=dict(intent),
        )
        if idempotency_key:
            self._idempotent[("capture", idempotency_key)] = result
        return result

    def void(self, intent_id, *, reason=None) -> PaymentVoidResult:
        self.calls["void"] += 1
        self._maybe_fail("void")
        intent = self._intent(intent_id)
        if intent["status"] == "succeeded":
            raise PaymentAlreadyCapturedError(intent["id"], intent["amount_received"])
        intent["status"] = "canceled"
        intent["cancellation_reason"] = reason
        return PaymentVoidResult(intent_id=intent["id"], status="canceled", provider=self.name, raw=dict(intent))

    def retrieve(self, intent_id) -> PaymentIntentSnapshot:
        self.calls["retrieve"] += 1
        self._maybe_fail("retrieve")
        return self._snapshot(self._intent(intent_id))

    def adjust(self, intent_id, *, amount_cents) -> PaymentIntentSnapshot:
        self.calls["adjust"] += 1
        self._maybe_fail("adjust")
        intent = self._intent(intent_id)
        if intent["status"] != "requires_capture":
            raise PaymentProviderError(f"MOCK_ADJUST_FAILED:intent is {intent['status']}")
        intent["amount"] = int(amount_cents)
        return self._snapshot(intent)
