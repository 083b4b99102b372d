# storefront/errors.py
from flask import jsonify

from .utils.api import api_error


class StoreError(Exception):
    """Base for every failure a client can act on."""

    status_code = 400
    kind = "store_error"

    def __init__(self, message, status_code=None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self):
        return {"error": self.kind, **self.details}


class ValidationError(StoreError):
    status_code = 400
    kind = "validation_error"


class EmptyCartError(ValidationError):
    kind = "empty_cart"

    def __init__(self, message="No items in the cart"):
        super().__init__(message)


class CouponInvalidError(ValidationError):
    kind = "coupon_invalid"

    def __init__(self, code, reason):
        super().__init__(f"coupon '{code}' invalid: {reason}", details={"code": code, "reason": reason})
        self.code = code
        self.reason = reason


class InsufficientStockError(StoreError):
    status_code = 400
    kind = "insufficient_stock"

    def __init__(self, items, message="Some items are out of stock"):
        super().__init__(message, details={"items": list(items)})
        self.items = list(items)


class AuthorizationError(StoreError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(StoreError):
    status_code = 404
    kind = "not_found"


class ConflictError(StoreError):
    status_code = 409
    kind = "conflict"


class PaymentVerificationError(StoreError):
    status_code = 400
    kind = "payment_verification_failed"


class PaymentGatewayError(StoreError):
    status_code = 502
    kind = "payment_gateway_error"


class GatewayTimeoutError(PaymentGatewayError):
    """The processor did not answer in time; the outcome is unknown."""

    status_code = 504
    kind = "payment_outcome_unknown"


def register_error_handlers(app):
    @app.errorhandler(StoreError)
    def handle_store_error(e):
        r = jsonify(api_error(e.message, e.to_dict()))
        r.status_code = e.status_code
        return r

    @app.errorhandler(404)
    def handle_not_found(e):
        r = jsonify(api_error("resource not found", {"error": "not_found"}))
        r.status_code = 404
        return r

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        r = jsonify(api_error("method not allowed", {"error": "method_not_allowed"}))
        r.status_code = 405
        return r
