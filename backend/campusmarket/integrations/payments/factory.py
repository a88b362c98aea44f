from __future__ import annotations

import os

from flask import current_app

from campusmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from campusmarket.integrations.payments.base import PaymentsProvider
from campusmarket.integrations.payments.mock_provider import MockPaymentsProvider
from campusmarket.integrations.payments.stripe_provider import StripePaymentsProvider


def _config_value(config, key: str, default=None):
    try:
        value = config.get(key, default)
    except AttributeError:
        value = getattr(config, key, default)
    return default if value is None else value


def build_payments_provider(config) -> PaymentsProvider:
    provider = (str(_config_value(config, "PAYMENTS_PROVIDER", "mock")) or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    timeout = float(_config_value(config, "PAYMENTS_TIMEOUT_SECONDS", 10) or 10)
    return StripePaymentsProvider(secret_key=secret_key, timeout_seconds=timeout)


def get_payments_provider() -> PaymentsProvider:
    """Provider bound to the current app, built on first use."""
    provider = current_app.extensions.get("payments_provider")
    if provider is None:
        provider = build_payments_provider(current_app.config)
        current_app.extensions["payments_provider"] = provider
    return provider


def payment_health(config) -> dict:
    provider = (str(_config_value(config, "PAYMENTS_PROVIDER", "mock")) or "mock").strip().lower()
    missing = []
    if provider == "stripe" and not (os.getenv("STRIPE_SECRET_KEY") or "").strip():
        missing.append("STRIPE_SECRET_KEY")
    if provider == "disabled":
        status = "disabled"
    elif provider not in ("mock", "stripe"):
        status = "misconfigured"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "currency": str(_config_value(config, "PAYMENTS_CURRENCY", "usd")),
        "missing": missing,
    }
