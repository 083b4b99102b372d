# storefront/services/webhooks.py
"""Stripe webhook event processing.

Exactly-once side effects per event id: a handler's state change and the
ledger row recording the event commit together, and a delivery whose event id
is already in the ledger is acknowledged without running the handler again.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import StoreError
from ..extensions import db
from ..model import Order, ProcessedWebhookEvent
from ..model.order import REFUNDED
from ..utils.dates import utcnow
from ..utils.money import from_cents
from ..utils.tx import commit_versioned
from .gateway import IntentStatus, get_gateway
from .notifications import ORDER_REFUNDED, PAYMENT_RECEIPT, notify_order
from .payments import settle

logger = logging.getLogger(__name__)

PROCESSED = "processed"
NOOP = "noop"
IGNORED = "ignored"
STALE = "stale"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    order_id: int | None = None
    error: str | None = None

    def as_api(self):
        body = {"received": True, "event_id": self.event_id, "outcome": self.outcome}
        if self.outcome in (STALE, DUPLICATE, IGNORED):
            body["ignored"] = True
        if self.error:
            body["error"] = self.error
        return body


def _order_id_from(obj: dict) -> int | None:
    meta = obj.get("metadata") or {}
    raw = meta.get("order_id") or meta.get("orderId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _lock_order(order_id) -> Order | None:
    if order_id is None:
        return None
    return (
        Order.query.filter(Order.id == order_id)
        .with_for_update(of=Order)
        .populate_existing()
        .one_or_none()
    )


# ---- handlers --------------------------------------------------------------
# Each returns (outcome, order, notification kind or None). They run inside
# the caller's transaction and never commit themselves.

def _on_payment_succeeded(obj: dict):
    order_id = _order_id_from(obj)
    order = _lock_order(order_id)
    if not order:
        logger.error("webhook payment succeeded for unknown order=%s intent=%s", order_id, obj.get("id"))
        return NOOP, None, None

    intent = IntentStatus(
        id=obj.get("id"),
        status=obj.get("status") or "succeeded",
        amount_received_cents=int(obj.get("amount_received") or 0),
        metadata=obj.get("metadata") or {},
        receipt_email=obj.get("receipt_email"),
        created=obj.get("created"),
    )
    if not settle(order, intent, "webhook"):
        logger.info("webhook order=%s already paid", order.id)
        return NOOP, order, None
    return PROCESSED, order, PAYMENT_RECEIPT


def _on_payment_failed(obj: dict):
    err = (obj.get("last_payment_error") or {}).get("message")
    logger.warning("payment failed intent=%s order=%s error=%s", obj.get("id"), _order_id_from(obj), err)
    return NOOP, None, None


def _on_charge_refunded(obj: dict):
    order_id = _order_id_from(obj)
    if order_id is None and obj.get("payment_intent"):
        match = Order.query.filter(Order.payment_intent_id == obj["payment_intent"]).first()
        order_id = match.id if match else None
    order = _lock_order(order_id)
    if not order:
        logger.warning("refund webhook without a matching order charge=%s", obj.get("id"))
        return NOOP, None, None
    if order.status == REFUNDED:
        logger.info("webhook order=%s already refunded", order.id)
        return NOOP, order, None

    refunds = ((obj.get("refunds") or {}).get("data") or [{}])
    order.mark_refunded({
        "refund_id": obj.get("refund") or refunds[0].get("id"),
        "amount": str(from_cents(obj.get("amount_refunded") or 0)),
        "status": "succeeded",
        "reason": "Stripe refund processed",
        "charge_id": obj.get("id"),
    }, utcnow())
    return PROCESSED, order, ORDER_REFUNDED


def _on_intent_canceled(obj: dict):
    logger.info("payment intent cancelled intent=%s order=%s", obj.get("id"), _order_id_from(obj))
    return NOOP, None, None


HANDLERS = {
    "payment_intent.succeeded": _on_payment_succeeded,
    "payment_intent.payment_failed": _on_payment_failed,
    "charge.refunded": _on_charge_refunded,
    "payment_intent.canceled": _on_intent_canceled,
}


# ---- entry point -----------------------------------------------------------

def _is_duplicate(event_id: str) -> bool:
    return db.session.query(ProcessedWebhookEvent.id).filter_by(event_id=event_id).first() is not None


def handle_webhook_event(payload, signature) -> WebhookOutcome:
    """Verify, dedupe and dispatch one delivery.

    Signature failures raise PaymentVerificationError; everything after that
    is acknowledged with an outcome so the processor stops retrying.
    """
    event = get_gateway().construct_event(payload, signature)
    event_id, event_type = event["id"], event["type"]

    tolerance = int(current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300))
    created = event.get("created")
    if created and int(time.time()) - int(created) > tolerance:
        logger.warning("old webhook event ignored id=%s type=%s age=%ss",
                       event_id, event_type, int(time.time()) - int(created))
        return WebhookOutcome(event_id, event_type, STALE)

    logger.info("webhook received id=%s type=%s", event_id, event_type)

    if _is_duplicate(event_id):
        logger.info("webhook duplicate id=%s", event_id)
        return WebhookOutcome(event_id, event_type, DUPLICATE)

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("unhandled webhook event type=%s id=%s", event_type, event_id)
        return WebhookOutcome(event_id, event_type, IGNORED)

    obj = (event.get("data") or {}).get("object") or {}

    def run():
        outcome, order, notice = handler(obj)
        db.session.add(ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            order_id=order.id if order else None,
            outcome=outcome,
        ))
        return outcome, order, notice

    try:
        # a rerun after losing a race with confirm/refund sees the committed state
        outcome, order, notice = commit_versioned(run, f"webhook {event_type}")
    except IntegrityError:
        # a concurrent delivery of the same event committed first
        logger.info("webhook duplicate (lost ledger race) id=%s", event_id)
        return WebhookOutcome(event_id, event_type, DUPLICATE)
    except StoreError as e:
        logger.error("webhook processing failed id=%s type=%s error=%s", event_id, event_type, e.message)
        return WebhookOutcome(event_id, event_type, FAILED, order_id=_order_id_from(obj), error=e.message)
    except Exception as e:
        logger.exception("webhook processing error id=%s type=%s", event_id, event_type)
        return WebhookOutcome(event_id, event_type, FAILED, order_id=_order_id_from(obj), error=str(e))

    logger.info("webhook processed id=%s type=%s outcome=%s order=%s",
                event_id, event_type, outcome, order.id if order else None)
    if notice and order is not None:
        notify_order(notice, order)
    return WebhookOutcome(event_id, event_type, outcome, order_id=order.id if order else None)
