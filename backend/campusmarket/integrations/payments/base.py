from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentAuthorizeResult:
    intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentCaptureResult:
    intent_id: str
    captured_amount_cents: int
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVoidResult:
    intent_id: str
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentIntentSnapshot:
    intent_id: str
    client_secret: str
    amount_cents: int
    amount_received_cents: int
    currency: str
    status: str
    provider: str
    raw: dict | None = None

    @property
    def is_captured(self) -> bool:
        return self.status == "succeeded"


class PaymentProviderError(RuntimeError):
    """Any failed call against the payment authority."""


class PaymentTimeoutError(PaymentProviderError):
    pass


class PaymentIntentNotFoundError(PaymentProviderError):
    pass


class PaymentAlreadyCapturedError(PaymentProviderError):
    def __init__(self, intent_id: str, captured_amount_cents: int = 0):
        super().__init__(f"PAYMENT_ALREADY_CAPTURED:{intent_id}")
        self.intent_id = intent_id
        self.captured_amount_cents = int(captured_amount_cents or 0)


class PaymentsProvider:
    """Escrow-style authorize-then-capture surface.

    Amounts are integer minor units. ``idempotency_key`` lets a retried call
    return the result of the first one instead of acting twice.
    """

    name = "unknown"

    def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentAuthorizeResult:
        raise NotImplementedError

    def capture(self, intent_id: str, *, idempotency_key: str | None = None) -> PaymentCaptureResult:
        raise NotImplementedError

    def void(self, intent_id: str, *, reason: str | None = None) -> PaymentVoidResult:
        raise NotImplementedError

    def retrieve(self, intent_id: str) -> PaymentIntentSnapshot:
        raise NotImplementedError

    def adjust(self, intent_id: str, *, amount_cents: int) -> PaymentIntentSnapshot:
        raise NotImplementedError
