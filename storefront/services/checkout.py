# storefront/services/checkout.py
"""Cart -> Order conversion.

Everything that changes state (stock, order row, coupon usage, cart) happens
inside one transaction. Any failure rolls the whole unit back before the error
reaches the caller.
"""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..context import RequestContext
from ..errors import (
    ConflictError,
    CouponInvalidError,
    EmptyCartError,
    InsufficientStockError,
    ValidationError,
)
from ..extensions import db
from ..model import Cart, Order, OrderItem
from ..model.coupon import normalize_code
from ..model.order import PAYMENT_METHODS, PENDING
from ..utils.dates import utcnow
from ..utils.money import D, round_money
from . import catalog, coupon_service
from .notifications import ORDER_CONFIRMED, notify_order

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("fullName", "address", "city", "state", "postalCode", "country")
MAX_IDEMPOTENCY_KEY = 255


def _gen_order_code():
    return "ORD-" + utcnow().strftime("%Y%m%d") + "-" + secrets.token_hex(4).upper()


def _clean_address(addr) -> dict:
    if not isinstance(addr, dict):
        raise ValidationError("shipping_address is required")
    out = {}
    missing = []
    for f in ADDRESS_FIELDS:
        v = addr.get(f)
        if f == "country" and not v:
            v = "United States"
        v = (str(v).strip() if v is not None else "")
        if not v:
            missing.append(f)
        out[f] = v
    if missing:
        raise ValidationError("shipping address incomplete", details={"missing": missing})
    if addr.get("phone"):
        out["phone"] = str(addr["phone"]).strip()[:20]
    return out


def _clean_payment_method(method) -> str:
    m = (method or "stripe").strip().lower()
    if m not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    return m


def _existing_for_key(ctx: RequestContext, key: str) -> Order | None:
    prior = Order.query.filter_by(idempotency_key=key).first()
    if prior and prior.user_id != ctx.user_id:
        raise ConflictError("idempotency key already used", details={"idempotency_key": key})
    return prior


def compute_totals(items_price, discount_amount) -> dict:
    """Shipping and tax policy; every figure rounded to cents."""
    cfg = current_app.config
    items_price = round_money(items_price)
    discount_amount = round_money(discount_amount)
    threshold = D(cfg.get("FREE_SHIPPING_THRESHOLD", "100.00"))
    shipping_price = round_money(cfg.get("SHIPPING_FLAT_RATE", "10.00")) if items_price <= threshold else Decimal("0.00")
    tax_price = round_money(items_price * D(cfg.get("TAX_RATE", "0.10")))
    total_price = round_money(items_price - discount_amount + tax_price + shipping_price)
    return {
        "items_price": items_price,
        "discount_amount": discount_amount,
        "shipping_price": shipping_price,
        "tax_price": tax_price,
        "total_price": total_price,
    }


def create_order(ctx: RequestContext, shipping_address, payment_method=None,
                 coupon_code=None, idempotency_key=None) -> tuple[Order, bool]:
    """Returns (order, created). created is False for an idempotent replay."""
    if ctx.user_id is None:
        raise ValidationError("a customer is required for checkout")

    key = (idempotency_key or "").strip() or None
    if key and len(key) > MAX_IDEMPOTENCY_KEY:
        raise ValidationError("idempotency key too long")

    # 1. replayed request: hand back the earlier order, no side effects
    if key:
        prior = _existing_for_key(ctx, key)
        if prior:
            logger.info("checkout replay key=%s order=%s", key, prior.id)
            return prior, False

    address = _clean_address(shipping_address)
    method = _clean_payment_method(payment_method)

    try:
        order = _place(ctx, address, method, coupon_code, key)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # a concurrent request with the same key won the insert
        if key:
            prior = _existing_for_key(ctx, key)
            if prior:
                logger.info("checkout lost key race key=%s order=%s", key, prior.id)
                return prior, False
        raise
    except Exception:
        db.session.rollback()
        raise

    logger.info("order created id=%s code=%s user=%s total=%s",
                order.id, order.code, order.user_id, order.total_price)
    notify_order(ORDER_CONFIRMED, order)
    return order, True


def _place(ctx, address, method, coupon_code, key) -> Order:
    # 2. cart
    cart = Cart.query.filter_by(user_id=ctx.user_id).with_for_update(of=Cart).one_or_none()
    if not cart or not cart.items:
        raise EmptyCartError()

    # 3. live price and stock, every shortage reported at once
    products = catalog.load_products(cart.product_ids(), for_update=True)
    shortages = []
    lines = []
    for it in cart.items:
        p = products.get(it.product_id)
        if not p or p.status is False:
            shortages.append({"product_id": it.product_id, "name": p.name if p else None,
                              "requested": it.quantity, "available": 0})
            continue
        if int(p.quantity or 0) < it.quantity:
            shortages.append({"product_id": p.id, "name": p.name,
                              "requested": it.quantity, "available": int(p.quantity or 0)})
            continue
        unit_price = round_money(p.price)
        lines.append((p, it.quantity, unit_price, round_money(unit_price * it.quantity)))

    if shortages:
        logger.warning("checkout stock shortage user=%s items=%s", ctx.user_id, shortages)
        raise InsufficientStockError(shortages)

    items_price = round_money(sum((lt for *_, lt in lines), Decimal("0")))

    # 4. coupon, explicit code first, then the cart hint
    code = normalize_code(coupon_code) or (cart.coupon.code if cart.coupon else "")
    coupon = None
    discount = Decimal("0")
    if code:
        coupon = coupon_service.find_valid(code)
        if not coupon:
            raise CouponInvalidError(code, "invalid or expired")
        reason = coupon_service.check_for_order(coupon, items_price, [p.id for p, *_ in lines], ctx.user_id)
        if reason:
            logger.info("checkout coupon rejected user=%s code=%s reason=%s", ctx.user_id, code, reason)
            raise CouponInvalidError(code, reason)
        discount = coupon_service.compute_discount(coupon, items_price)

    # 5. totals
    totals = compute_totals(items_price, discount)

    # 6. guarded stock decrements; a lost race is a shortage like any other
    lost = []
    for p, qty, *_ in lines:
        if not catalog.atomic_decrement_stock(p.id, qty):
            lost.append({"product_id": p.id, "name": p.name, "requested": qty,
                         "available": catalog.get_stock(p.id)})
    if lost:
        logger.warning("checkout stock race lost user=%s items=%s", ctx.user_id, lost)
        raise InsufficientStockError(lost)

    order = Order(
        code=_gen_order_code(),
        user_id=ctx.user_id,
        status=PENDING,
        idempotency_key=key,
        shipping_address=address,
        payment_method=method,
        coupon_code=coupon.code if coupon else None,
        coupon_applied=coupon.snapshot(discount) if coupon else None,
        **totals,
    )
    for p, qty, unit_price, line_total in lines:
        order.items.append(OrderItem(
            item_kind=p.ref.kind.value,
            product_id=p.id,
            name=p.name,
            image_url=p.image_url,
            unit_price=unit_price,
            quantity=qty,
            line_total=line_total,
        ))
    db.session.add(order)
    db.session.flush()

    if coupon and not coupon_service.increment_usage(coupon.id):
        raise CouponInvalidError(coupon.code, "Coupon usage limit reached")

    cart.empty()
    return order
