from __future__ import annotations


class OrderError(Exception):
    """Base for failures an order action reports back to its caller."""

    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, message: str, *, order_id: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.message, "code": self.code}
        if self.order_id is not None:
            payload["order_id"] = int(self.order_id)
        if self.details:
            payload["details"] = self.details
        return payload


class OrderNotFoundError(OrderError):
    code = "NOT_FOUND"
    http_status = 404


class OrderUnauthorizedError(OrderError):
    code = "UNAUTHORIZED"
    http_status = 403


class InvalidOrderStateError(OrderError):
    code = "INVALID_STATE"
    http_status = 409


class OrderValidationError(OrderError):
    code = "VALIDATION_ERROR"
    http_status = 400


class PaymentGatewayError(OrderError):
    code = "PAYMENT_GATEWAY_ERROR"
    http_status = 502


class ConcurrencyConflictError(OrderError):
    code = "CONCURRENCY_CONFLICT"
    http_status = 409
