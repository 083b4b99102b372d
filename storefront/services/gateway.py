# storefront/services/gateway.py
"""Payment processor boundary.

Only this module talks to Stripe. Every network call is bounded by the
configured timeout; a connection failure or timeout is surfaced as
GatewayTimeoutError because the processor may or may not have acted.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

import stripe
from flask import current_app

from ..errors import GatewayTimeoutError, PaymentGatewayError, PaymentVerificationError
from ..utils.money import Money, from_cents, to_cents

logger = logging.getLogger(__name__)

EXTENSION_KEY = "payment_gateway"

_METADATA_UNSAFE = re.compile(r"[^\w\s@.-]")


def _get(obj, key, default=None):
    try:
        v = obj[key]
    except (KeyError, TypeError):
        return default
    return default if v is None else v


def sanitize_metadata(obj: dict) -> dict:
    return {
        k: _METADATA_UNSAFE.sub("", str(v)).strip()[:500]
        for k, v in obj.items()
        if v is not None
    }


@dataclass(frozen=True)
class PaymentIntentHandle:
    id: str
    client_secret: str
    amount_cents: int
    status: str = "requires_payment_method"


@dataclass(frozen=True)
class IntentStatus:
    id: str
    status: str
    amount_received_cents: int
    metadata: dict = field(default_factory=dict)
    receipt_email: str | None = None
    created: int | None = None

    @property
    def amount_received(self) -> Money:
        return from_cents(self.amount_received_cents)


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount: Money
    status: str

    def as_dict(self, reason=None):
        return {"refund_id": self.id, "amount": str(self.amount), "status": self.status, "reason": reason}


class PaymentGateway:
    """Contract the order/payment services rely on."""

    def ensure_customer(self, user) -> str | None:
        raise NotImplementedError

    def create_payment_intent(self, order, user, customer_id=None) -> PaymentIntentHandle:
        raise NotImplementedError

    def retrieve_payment_intent(self, intent_id: str) -> IntentStatus:
        raise NotImplementedError

    def refund(self, order, amount, reason=None) -> RefundResult:
        raise NotImplementedError

    def construct_event(self, payload: bytes, sig_header: str):
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd", tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.tolerance = tolerance

    # ---- error translation -------------------------------------------------
    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error("stripe %s outcome unknown: %s", what, e)
            raise GatewayTimeoutError(f"payment processor did not respond to {what}; outcome unknown")
        except stripe.StripeError as e:
            logger.error("stripe %s failed: %s", what, e)
            raise PaymentGatewayError(f"Stripe {what} failed: {e.user_message or e}")

    # ---- operations --------------------------------------------------------
    def ensure_customer(self, user) -> str | None:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer = self._call(
            "customer create",
            stripe.Customer.create,
            email=user.email,
            name=user.name,
            metadata=sanitize_metadata({"user_id": user.id}),
            idempotency_key=f"customer-{user.id}",
        )
        return customer["id"]

    def create_payment_intent(self, order, user, customer_id=None) -> PaymentIntentHandle:
        amount = to_cents(order.total_price)
        params = dict(
            amount=amount,
            currency=self.currency,
            metadata=sanitize_metadata({
                "order_id": order.id,
                "order_code": order.code,
                "user_id": user.id,
                "user_email": user.email,
            }),
            description=f"Payment for Order #{order.code or order.id}",
            receipt_email=user.email,
            # same order + same amount reuses the processor-side intent
            idempotency_key=f"pi-{order.id}-{amount}",
        )
        if customer_id:
            params["customer"] = customer_id
        addr = order.shipping_address or {}
        if addr:
            params["shipping"] = {
                "name": str(addr.get("fullName", ""))[:100],
                "address": {
                    "line1": str(addr.get("address", ""))[:200],
                    "city": str(addr.get("city", ""))[:100],
                    "state": str(addr.get("state", ""))[:100],
                    "postal_code": str(addr.get("postalCode", ""))[:20],
                    "country": str(addr.get("country") or "US")[:2],
                },
            }
        intent = self._call("payment intent create", stripe.PaymentIntent.create, **params)
        return PaymentIntentHandle(
            id=intent["id"],
            client_secret=intent["client_secret"],
            amount_cents=intent["amount"],
            status=intent["status"],
        )

    def retrieve_payment_intent(self, intent_id: str) -> IntentStatus:
        intent = self._call("payment intent retrieve", stripe.PaymentIntent.retrieve, intent_id)
        meta = _get(intent, "metadata", {})
        return IntentStatus(
            id=intent["id"],
            status=intent["status"],
            amount_received_cents=_get(intent, "amount_received", 0),
            metadata={k: meta[k] for k in meta.keys()},
            receipt_email=_get(intent, "receipt_email"),
            created=_get(intent, "created"),
        )

    def refund(self, order, amount, reason=None) -> RefundResult:
        if not order.payment_intent_id:
            raise PaymentGatewayError("Payment information not found for this order")
        refund = self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=order.payment_intent_id,
            amount=to_cents(amount),
            reason="requested_by_customer",
            metadata=sanitize_metadata({"order_id": order.id, "order_code": order.code, "note": reason}),
            # concurrent attempts for the same amount collapse into one on the processor
            idempotency_key=f"refund-{order.id}-{to_cents(amount)}",
        )
        return RefundResult(id=refund["id"], amount=from_cents(refund["amount"]), status=refund["status"])

    def construct_event(self, payload: bytes, sig_header: str) -> dict:
        """Verify the Stripe-Signature header and decode the event body."""
        if not sig_header:
            raise PaymentVerificationError("Webhook signature required")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise PaymentVerificationError(f"Webhook signature verification failed: {e}")
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise PaymentVerificationError(f"Invalid webhook payload: {e}")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise PaymentVerificationError("Invalid webhook payload: missing id or type")
        return event


_http_client = None


def _install_http_client(timeout: float):
    """The stripe SDK keeps one process-wide HTTP client; bound it once."""
    global _http_client
    if _http_client is None:
        _http_client = stripe.RequestsClient(timeout=timeout)
        stripe.default_http_client = _http_client
    return _http_client


def init_gateway(app):
    timeout = float(app.config.get("PAYMENT_GATEWAY_TIMEOUT", 10))
    if app.config.get("STRIPE_SECRET_KEY"):
        _install_http_client(timeout)
    app.extensions[EXTENSION_KEY] = StripeGateway(
        api_key=app.config.get("STRIPE_SECRET_KEY", ""),
        webhook_secret=app.config.get("STRIPE_WEBHOOK_SECRET", ""),
        currency=app.config.get("PAYMENT_CURRENCY", "usd"),
        tolerance=int(app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300)),
    )


def get_gateway() -> PaymentGateway:
    return current_app.extensions[EXTENSION_KEY]
