"""Order pricing.

Pure functions over integer cents. Nothing here touches the database, so the
same quote is produced however many times a checkout page asks for it.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from campusmarket.services.order_errors import OrderValidationError


@dataclass(frozen=True)
class RentalQuote:
    days: int
    subtotal_cents: int
    deposit_cents: int
    total_cents: int


@dataclass(frozen=True)
class OrderQuote:
    subtotal_cents: int
    deposit_cents: int | None
    fees_cents: int
    total_cents: int
    rental_days: int | None = None


def _require_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise OrderValidationError(f"{field_name} must be a whole number")
    return value


def price_rental(day_rate_cents: int, deposit_rate_cents: int, days: int, min_days: int, max_days: int) -> RentalQuote:
    days = _require_int(days, "Rental days")
    day_rate_cents = _require_int(day_rate_cents, "Daily rental price")
    deposit_rate_cents = _require_int(deposit_rate_cents, "Rental deposit")
    if day_rate_cents < 0 or deposit_rate_cents < 0:
        raise OrderValidationError("Rental prices must not be negative")
    if days < int(min_days) or days > int(max_days):
        raise OrderValidationError(
            f"Rental period must be between {int(min_days)} and {int(max_days)} days",
            details={"days": days, "min_days": int(min_days), "max_days": int(max_days)},
        )
    subtotal = day_rate_cents * days
    return RentalQuote(
        days=days,
        subtotal_cents=subtotal,
        deposit_cents=deposit_rate_cents,
        total_cents=subtotal + deposit_rate_cents,
    )


def price_purchase(price_cents: int, quantity: int = 1) -> int:
    price_cents = _require_int(price_cents, "Price")
    quantity = _require_int(quantity, "Quantity")
    if price_cents <= 0:
        raise OrderValidationError("Listing has no valid price")
    if quantity < 1:
        raise OrderValidationError("Quantity must be at least 1")
    return price_cents * quantity


def compute_fee_cents(subtotal_cents: int, fee_bps: int) -> int:
    bps = int(fee_bps or 0)
    if bps <= 0 or subtotal_cents <= 0:
        return 0
    fee = (Decimal(int(subtotal_cents)) * Decimal(bps) / Decimal(10000)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee)


def _rental_terms(listing) -> tuple[int, int, int, int]:
    terms = (
        listing.rental_day_price_cents,
        listing.rental_deposit_cents,
        listing.rental_min_days,
        listing.rental_max_days,
    )
    if any(v is None for v in terms):
        raise OrderValidationError("Listing has incomplete rental terms")
    return tuple(int(v) for v in terms)


def quote_rental(listing, days: int, *, fee_bps: int = 0) -> OrderQuote:
    day_rate, deposit, min_days, max_days = _rental_terms(listing)
    rental = price_rental(day_rate, deposit, days, min_days, max_days)
    fees = compute_fee_cents(rental.subtotal_cents, fee_bps)
    return OrderQuote(
        subtotal_cents=rental.subtotal_cents,
        deposit_cents=rental.deposit_cents,
        fees_cents=fees,
        total_cents=rental.total_cents + fees,
        rental_days=rental.days,
    )


def quote_purchase(listing, quantity: int = 1, *, fee_bps: int = 0) -> OrderQuote:
    if listing.price_cents is None:
        raise OrderValidationError("Listing has no valid price")
    subtotal = price_purchase(int(listing.price_cents), quantity)
    fees = compute_fee_cents(subtotal, fee_bps)
    return OrderQuote(
        subtotal_cents=subtotal,
        deposit_cents=None,
        fees_cents=fees,
        total_cents=subtotal + fees,
    )


def default_rental_days(listing) -> int:
    return int(listing.rental_min_days or 1)
