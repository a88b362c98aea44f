from __future__ import annotations

import requests

from campusmarket.integrations.payments.base import (
    PaymentAlreadyCapturedError,
    PaymentAuthorizeResult,
    PaymentCaptureResult,
    PaymentIntentNotFoundError,
    PaymentIntentSnapshot,
    PaymentProviderError,
    PaymentsProvider,
    PaymentTimeoutError,
    PaymentVoidResult,
)

STRIPE_API_BASE = "https://api.stripe.com/v1"
STRIPE_API_VERSION = "2023-10-16"


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, *, timeout_seconds: float = 10.0, api_base: str = STRIPE_API_BASE):
        self.secret_key = secret_key
        self.timeout_seconds = float(timeout_seconds)
        self.api_base = api_base.rstrip("/")

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Stripe-Version": STRIPE_API_VERSION,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key[:255]
        return headers

    def _request(self, method: str, path: str, op: str, *, data: dict | None = None, idempotency_key: str | None = None) -> tuple[int, dict]:
        url = f"{self.api_base}{path}"
        try:
            r = requests.request(
                method,
                url,
                headers=self._headers(idempotency_key),
                data=data,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise PaymentTimeoutError(f"STRIPE_{op}_TIMEOUT:{e}") from e
        except requests.RequestException as e:
            raise PaymentProviderError(f"STRIPE_{op}_FAILED:{e}") from e
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if not isinstance(j, dict):
            j = {"payload": j}
        return r.status_code, j

    def _raise_for_error(self, status_code: int, j: dict, op: str, intent_id: str = "") -> None:
        if 200 <= status_code < 300:
            return
        err = j.get("error") or {}
        code = (err.get("code") or "").strip()
        msg = (err.get("message") or f"HTTP {status_code}").strip()
        if status_code == 404 or code == "resource_missing":
            raise PaymentIntentNotFoundError(f"PAYMENT_INTENT_NOT_FOUND:{intent_id or msg}")
        if code == "payment_intent_unexpected_state":
            pi = err.get("payment_intent") or {}
            if (pi.get("status") or "") == "succeeded":
                raise PaymentAlreadyCapturedError(intent_id or str(pi.get("id") or ""), int(pi.get("amount_received") or 0))
        raise PaymentProviderError(f"STRIPE_{op}_FAILED:{msg}")

    def _snapshot(self, data: dict) -> PaymentIntentSnapshot:
        return PaymentIntentSnapshot(
            intent_id=(data.get("id") or "").strip(),
            client_secret=(data.get("client_secret") or "").strip(),
            amount_cents=int(data.get("amount") or 0),
            amount_received_cents=int(data.get("amount_received") or 0),
            currency=(data.get("currency") or "usd").strip().lower(),
            status=(data.get("status") or "").strip().lower(),
            provider=self.name,
            raw=data,
        )

    def authorize(self, *, amount_cents, currency, metadata=None, idempotency_key=None) -> PaymentAuthorizeResult:
        payload = {
            "amount": int(amount_cents),
            "currency": (currency or "usd").lower(),
            "capture_method": "manual",
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            payload[f"metadata[{key}]"] = "" if value is None else str(value)
        status_code, j = self._request("POST", "/payment_intents", "AUTHORIZE", data=payload, idempotency_key=idempotency_key)
        self._raise_for_error(status_code, j, "AUTHORIZE")
        snap = self._snapshot(j)
        return PaymentAuthorizeResult(
            intent_id=snap.intent_id,
            client_secret=snap.client_secret,
            amount_cents=snap.amount_cents,
            currency=snap.currency,
            status=snap.status,
            provider=self.name,
            raw=j,
        )

    def capture(self, intent_id, *, idempotency_key=None) -> PaymentCaptureResult:
        ref = (intent_id or "").strip()
        status_code, j = self._request("POST", f"/payment_intents/{ref}/capture", "CAPTURE", idempotency_key=idempotency_key)
        if (j.get("error") or {}).get("code") == "payment_intent_unexpected_state" and not (j["error"].get("payment_intent") or {}):
            # Older API versions omit the intent from the error body.
            snap = self.retrieve(ref)
            if snap.is_captured:
                raise PaymentAlreadyCapturedError(ref, snap.amount_received_cents)
        self._raise_for_error(status_code, j, "CAPTURE", ref)
        return PaymentCaptureResult(
            intent_id=(j.get("id") or ref).strip(),
            captured_amount_cents=int(j.get("amount_received") or 0),
            status=(j.get("status") or "").strip().lower(),
            provider=self.name,
            raw=j,
        )

    def void(self, intent_id, *, reason=None) -> PaymentVoidResult:
        ref = (intent_id or "").strip()
        data = {"cancellation_reason": reason} if reason else None
        status_code, j = self._request("POST", f"/payment_intents/{ref}/cancel", "VOID", data=data)
        err = j.get("error") or {}
        if err.get("code") == "payment_intent_unexpected_state":
            snap = self.retrieve(ref)
            if snap.status == "canceled":
                return PaymentVoidResult(intent_id=ref, status="canceled", provider=self.name, raw=snap.raw)
            if snap.is_captured:
                raise PaymentAlreadyCapturedError(ref, snap.amount_received_cents)
        self._raise_for_error(status_code, j, "VOID", ref)
        return PaymentVoidResult(
            intent_id=(j.get("id") or ref).strip(),
            status=(j.get("status") or "").strip().lower(),
            provider=self.name,
            raw=j,
        )

    def retrieve(self, intent_id) -> PaymentIntentSnapshot:
        ref = (intent_id or "").strip()
        status_code, j = self._request("GET", f"/payment_intents/{ref}", "RETRIEVE")
        self._raise_for_error(status_code, j, "RETRIEVE", ref)
        return self._snapshot(j)

    def adjust(self, intent_id, *, amount_cents) -> PaymentIntentSnapshot:
        ref = (intent_id or "").strip()
        status_code, j = self._request("POST", f"/payment_intents/{ref}", "ADJUST", data={"amount": int(amount_cents)})
        self._raise_for_error(status_code, j, "ADJUST", ref)
        return self._snapshot(j)
