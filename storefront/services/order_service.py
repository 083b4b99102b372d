# storefront/services/order_service.py
"""Order lifecycle operations.

Each operation loads the order under a row lock, checks the transition on the
model, writes and commits. Row locks are not available on every backend, so
the commit also relies on the order version check (utils.tx). Notifications go
out only after the commit.
"""
from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import or_

from ..context import RequestContext
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..model import Order
from ..model.order import DIRECT_REFUNDABLE, REFUNDED, STATUSES
from ..utils.dates import utcnow
from ..utils.money import D, round_money
from ..utils.tx import commit_versioned
from . import catalog
from .gateway import get_gateway
from .notifications import (
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    PAYMENT_RECEIPT,
    RETURN_REJECTED,
    notify_order,
)

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"


# ---- loading ---------------------------------------------------------------

def _load(order_id, *, for_update=False) -> Order:
    q = Order.query.filter(Order.id == order_id)
    if for_update:
        q = q.with_for_update(of=Order).populate_existing()
    order = q.one_or_none()
    if not order:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def _check_access(ctx: RequestContext, order: Order, *, owner_only=False):
    if ctx.owns(order.user_id):
        return
    if not owner_only and ctx.is_admin:
        return
    raise AuthorizationError("Not authorized to access this order", details={"order_id": order.id})


def _require_admin(ctx: RequestContext):
    if not ctx.is_admin:
        raise AuthorizationError("Admin access required")


def get_order(ctx: RequestContext, order_id) -> Order:
    order = _load(order_id)
    _check_access(ctx, order)
    return order


def list_my_orders(ctx: RequestContext, page=1, per_page=20):
    q = Order.query.filter(Order.user_id == ctx.user_id).order_by(Order.created_at.desc(), Order.id.desc())
    return q.paginate(page=page, per_page=per_page, error_out=False)


def list_orders(ctx: RequestContext, status=None, user_id=None, q=None, page=1, per_page=20):
    _require_admin(ctx)
    query = Order.query
    if status:
        if status not in STATUSES:
            raise ValidationError(f"status must be one of {', '.join(STATUSES)}")
        query = query.filter(Order.status == status)
    if user_id:
        query = query.filter(Order.user_id == int(user_id))
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Order.code.ilike(like), Order.payment_intent_id.ilike(like)))
    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    return query.paginate(page=page, per_page=per_page, error_out=False)


def _transition(order_id, fn, what):
    """Lock, apply fn(order), commit; rollback on any failure."""
    def run():
        order = _load(order_id, for_update=True)
        fn(order)
        return order

    order = commit_versioned(run, f"order {what}")
    logger.info("order %s id=%s status=%s", what, order.id, order.status)
    return order


# ---- customer operations ---------------------------------------------------

def cancel_order(ctx: RequestContext, order_id) -> Order:
    restock = current_app.config.get("RESTOCK_ON_CANCEL", True)

    def apply(order):
        _check_access(ctx, order, owner_only=True)
        order.cancel(utcnow())
        if restock:
            for it in order.items:
                catalog.increment_stock(it.product_id, it.quantity)

    order = _transition(order_id, apply, "cancelled")
    notify_order(ORDER_CANCELLED, order)
    return order


def request_return(ctx: RequestContext, order_id, reason=None) -> Order:
    reason = (reason or "").strip()[:500] or None
    window = int(current_app.config.get("RETURN_WINDOW_DAYS", 30))

    def apply(order):
        _check_access(ctx, order, owner_only=True)
        order.request_return(reason, window, utcnow())

    return _transition(order_id, apply, "return requested")


# ---- admin operations ------------------------------------------------------

def mark_shipped(ctx: RequestContext, order_id) -> Order:
    _require_admin(ctx)
    return _transition(order_id, lambda o: o.mark_shipped(utcnow()), "shipped")


def mark_delivered(ctx: RequestContext, order_id) -> Order:
    _require_admin(ctx)
    return _transition(order_id, lambda o: o.mark_delivered(utcnow()), "delivered")


def admin_mark_paid(ctx: RequestContext, order_id, reference=None) -> Order:
    """Manual settlement, e.g. cash on delivery."""
    _require_admin(ctx)
    now = utcnow()

    def apply(order):
        order.mark_as_paid({
            "id": reference or f"manual-{order.id}",
            "status": "succeeded",
            "method": order.payment_method,
            "update_time": now.isoformat(),
            "marked_by": ctx.user_id,
        }, now)

    order = _transition(order_id, apply, "marked paid")
    notify_order(PAYMENT_RECEIPT, order)
    return order


def parse_refund_amount(raw):
    """None means the full order total; anything else must be a positive amount."""
    if raw is None or raw == "":
        return None
    try:
        amount = round_money(D(raw))
    except (ArithmeticError, ValueError):
        raise ValidationError("Invalid refund amount", details={"amount": str(raw)})
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Invalid refund amount", details={"amount": str(raw)})
    return amount


def _issue_refund(order: Order, reason, amount=None):
    """Gateway refund for card orders, a manual record for everything else.

    A requested amount above the order total is capped at the total.
    """
    total = D(order.total_price)
    amount = total if amount is None else min(D(amount), total)
    if order.payment_intent_id:
        return get_gateway().refund(order, amount, reason).as_dict(reason)
    return {"refund_id": None, "amount": str(amount), "status": "manual", "reason": reason}


def process_refund(ctx: RequestContext, order_id, reason=None, amount=None) -> Order:
    _require_admin(ctx)
    reason = (reason or "").strip()[:500] or None
    amount = parse_refund_amount(amount)

    def run():
        order = _load(order_id, for_update=True)
        if order.status == REFUNDED:
            raise ConflictError("Order is already refunded", details={"order_id": order.id})
        if not order.is_paid:
            raise ConflictError("Cannot refund an unpaid order", details={"order_id": order.id})
        if order.status not in DIRECT_REFUNDABLE:
            raise ConflictError(f"Cannot refund a {order.status} order",
                                details={"order_id": order.id, "status": order.status})
        refund = _issue_refund(order, reason, amount)
        order.mark_refunded(refund, utcnow(), allowed=DIRECT_REFUNDABLE)
        _restock_refund(order)
        return order

    order = commit_versioned(run, "refund")
    logger.info("order refunded id=%s amount=%s by=%s", order.id, order.refund_result.get("amount"), ctx.user_id)
    notify_order(ORDER_REFUNDED, order)
    return order


def process_return(ctx: RequestContext, order_id, action, rejection_reason=None) -> Order:
    _require_admin(ctx)
    action = (action or "").strip().lower()
    if action not in (APPROVE, REJECT):
        raise ValidationError("action must be 'approve' or 'reject'")

    def run():
        order = _load(order_id, for_update=True)
        now = utcnow()
        if action == APPROVE:
            if not order.has_pending_return:
                raise ConflictError("No pending return request for this order",
                                    details={"order_id": order.id, "status": order.status})
            refund = _issue_refund(order, order.return_reason or "Customer return")
            order.approve_return(refund, now)
            _restock_refund(order)
        else:
            order.reject_return((rejection_reason or "").strip()[:500] or None, now)
        return order

    order = commit_versioned(run, f"return {action}")
    logger.info("order return %s id=%s by=%s", action, order.id, ctx.user_id)
    notify_order(ORDER_REFUNDED if action == APPROVE else RETURN_REJECTED, order)
    return order


def _restock_refund(order: Order):
    if current_app.config.get("RESTOCK_ON_REFUND", False):
        for it in order.items:
            catalog.increment_stock(it.product_id, it.quantity)
