# storefront/services/payments.py
"""Customer-facing payment operations on top of the gateway adapter."""
from __future__ import annotations

import logging

from flask import current_app

from ..context import RequestContext
from ..errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentVerificationError,
    ValidationError,
)
from ..extensions import db
from ..model import Order, User
from ..model.order import CANCELLED, PENDING, REFUNDED
from ..utils.dates import utcnow
from ..utils.money import D, amounts_match
from ..utils.tx import commit_versioned
from .gateway import IntentStatus, get_gateway
from .notifications import PAYMENT_RECEIPT, notify_order

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
PAYPAL_COMPLETED = "COMPLETED"


def _load_for(ctx: RequestContext, order_id, *, for_update=False) -> Order:
    q = Order.query.filter(Order.id == order_id)
    if for_update:
        q = q.with_for_update(of=Order).populate_existing()
    order = q.one_or_none()
    if not order:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    if not (ctx.owns(order.user_id) or ctx.is_admin or ctx.role == "system"):
        raise AuthorizationError("Not authorized to pay for this order", details={"order_id": order.id})
    return order


def create_payment_intent(ctx: RequestContext, order_id) -> dict:
    gateway = get_gateway()

    def run():
        order = _load_for(ctx, order_id, for_update=True)
        if order.is_paid:
            raise ConflictError("Order is already paid", details={"order_id": order.id})
        if order.status in (CANCELLED, REFUNDED):
            raise ConflictError(f"Cannot pay for a {order.status} order",
                                details={"order_id": order.id, "status": order.status})
        if order.payment_method != "stripe":
            raise ValidationError("Order payment method is not card", details={"payment_method": order.payment_method})

        total = D(order.total_price)
        ceiling = D(current_app.config.get("MAX_PAYMENT_AMOUNT", "10000.00"))
        if total <= 0 or total > ceiling:
            raise ValidationError("Invalid payment amount", details={"amount": str(total)})

        user = db.session.get(User, order.user_id)
        customer_id = gateway.ensure_customer(user)
        if customer_id and user.stripe_customer_id != customer_id:
            user.stripe_customer_id = customer_id

        # a rerun after a lost race gets the same intent back (idempotency key)
        handle = gateway.create_payment_intent(order, user, customer_id)
        order.payment_intent_id = handle.id
        return order, handle, total

    order, handle, total = commit_versioned(run, "payment intent")
    logger.info("payment intent created order=%s intent=%s amount_cents=%s",
                order.id, handle.id, handle.amount_cents)
    return {
        "client_secret": handle.client_secret,
        "payment_intent_id": handle.id,
        "amount": float(total),
        "order_id": order.id,
    }


def verify_intent_for_order(order: Order, intent: IntentStatus):
    """Raise PaymentVerificationError unless the intent settles exactly this order."""
    if intent.status != SUCCEEDED:
        raise PaymentVerificationError("Payment not completed", details={"intent_status": intent.status})
    if order.payment_intent_id and order.payment_intent_id != intent.id:
        raise PaymentVerificationError("Payment intent does not belong to this order")
    meta = intent.metadata or {}
    if str(meta.get("order_id")) != str(order.id):
        raise PaymentVerificationError("Payment intent does not belong to this order")
    if meta.get("user_id") is not None and str(meta.get("user_id")) != str(order.user_id):
        raise PaymentVerificationError("Payment intent user mismatch")
    if not amounts_match(intent.amount_received, order.total_price):
        logger.error("amount mismatch order=%s expected=%s received=%s",
                     order.id, order.total_price, intent.amount_received)
        raise PaymentVerificationError(
            "Payment amount mismatch",
            details={"expected": str(D(order.total_price)), "received": str(intent.amount_received)},
        )


def payment_result_from(intent: IntentStatus, source: str) -> dict:
    return {
        "id": intent.id,
        "status": intent.status,
        "update_time": utcnow().isoformat(),
        "email_address": intent.receipt_email,
        "source": source,
    }


def paypal_result_from(data) -> dict:
    """Payment result for a captured PayPal order as reported by the client SDK."""
    data = data if isinstance(data, dict) else {}
    if not data.get("id"):
        raise ValidationError("PayPal payment ID is required")
    if data.get("status") != PAYPAL_COMPLETED:
        raise PaymentVerificationError("PayPal payment not completed", details={"paypal_status": data.get("status")})
    email = (data.get("payer") or {}).get("email_address")
    if not email:
        raise ValidationError("PayPal payment data incomplete")
    return {
        "id": str(data["id"]),
        "status": SUCCEEDED,
        "update_time": data.get("update_time") or utcnow().isoformat(),
        "email_address": email,
        "payment_method": "paypal",
        "source": "confirm",
    }


def settle(order: Order, intent: IntentStatus, source: str) -> bool:
    """Mark a locked order paid from a verified intent. False when already paid."""
    if order.is_paid:
        return False
    verify_intent_for_order(order, intent)
    order.mark_as_paid(payment_result_from(intent, source), utcnow())
    if not order.payment_intent_id:
        order.payment_intent_id = intent.id
    return True


def _settle_committed(ctx, order_id, intent: IntentStatus, source: str) -> tuple[Order, bool]:
    def run():
        order = _load_for(ctx, order_id, for_update=True)
        return order, settle(order, intent, source)

    return commit_versioned(run, f"payment {source}")


def confirm_payment(ctx: RequestContext, order_id, payment_intent_id=None, paypal_data=None) -> tuple[Order, bool]:
    """Synchronous confirmation after the client completes the card or PayPal flow."""
    # plain read first so a stranger never triggers a gateway call
    order = _load_for(ctx, order_id)
    if order.payment_method == "paypal":
        return _confirm_paypal(ctx, order_id, paypal_data)
    if order.payment_method != "stripe":
        raise ValidationError("Cash on delivery orders are settled by an admin",
                              details={"payment_method": order.payment_method})
    if not payment_intent_id:
        raise ValidationError("payment_intent_id is required")

    intent = get_gateway().retrieve_payment_intent(payment_intent_id)
    order, changed = _settle_committed(ctx, order_id, intent, "confirm")
    if changed:
        logger.info("payment confirmed order=%s intent=%s", order.id, intent.id)
        notify_order(PAYMENT_RECEIPT, order)
    else:
        logger.info("payment confirm no-op order=%s already paid", order.id)
    return order, changed


def _confirm_paypal(ctx: RequestContext, order_id, data) -> tuple[Order, bool]:
    result = paypal_result_from(data)

    def run():
        order = _load_for(ctx, order_id, for_update=True)
        if order.is_paid:
            return order, False
        order.mark_as_paid(result, utcnow())
        return order, True

    order, changed = commit_versioned(run, "payment paypal")
    if changed:
        logger.info("paypal payment confirmed order=%s paypal_id=%s", order.id, result["id"])
        notify_order(PAYMENT_RECEIPT, order)
    else:
        logger.info("paypal confirm no-op order=%s already paid", order.id)
    return order, changed


def sync_payment(order_id) -> str:
    """Reconcile an order whose payment outcome is unknown. Returns the outcome."""
    ctx = RequestContext.system()
    order = _load_for(ctx, order_id)
    if order.is_paid:
        return "already_paid"
    if not order.payment_intent_id:
        return "no_payment_intent"
    if order.status != PENDING:
        return f"skipped_{order.status}"

    intent = get_gateway().retrieve_payment_intent(order.payment_intent_id)
    if intent.status != SUCCEEDED:
        logger.info("sync order=%s intent=%s status=%s", order.id, intent.id, intent.status)
        return f"intent_{intent.status}"

    order, changed = _settle_committed(ctx, order_id, intent, "sync")
    if changed:
        logger.info("sync marked order=%s paid", order.id)
        notify_order(PAYMENT_RECEIPT, order)
        return "marked_paid"
    return "already_paid"
