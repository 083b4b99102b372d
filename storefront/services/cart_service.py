# storefront/services/cart_service.py
from __future__ import annotations

import logging
from decimal import Decimal

from flask import current_app

from ..context import RequestContext
from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..extensions import db
from ..model import Cart, CartItem
from ..model.coupon import normalize_code
from ..utils.dates import utcnow
from ..utils.money import D, round_money
from . import catalog, coupon_service

logger = logging.getLogger(__name__)

MIN_Q = 1


def _max_q() -> int:
    return int(current_app.config.get("MAX_CART_QTY", 10))


def validate_quantity(qty) -> int:
    try:
        q = int(qty)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a number")
    if isinstance(qty, float) and qty != q:
        raise ValidationError("Quantity must be a whole number")
    if q < MIN_Q or q > _max_q():
        raise ValidationError(f"Quantity must be between {MIN_Q} and {_max_q()}")
    return q


def _require_user(ctx: RequestContext) -> int:
    if ctx.user_id is None:
        raise ValidationError("a customer is required for cart operations")
    return ctx.user_id


def get_cart(ctx: RequestContext) -> Cart | None:
    return Cart.query.filter_by(user_id=_require_user(ctx)).first()


def get_or_create_cart(ctx: RequestContext) -> Cart:
    cart = get_cart(ctx)
    if not cart:
        cart = Cart(user_id=ctx.user_id)
        db.session.add(cart)
        db.session.flush()
    return cart


def _require_cart(ctx: RequestContext) -> Cart:
    cart = get_cart(ctx)
    if not cart:
        raise NotFoundError("No cart found for this user")
    return cart


def _check_stock(product, qty: int):
    # always against the live catalog row, never a cached value
    available = catalog.get_stock(product.id)
    if available < qty:
        raise InsufficientStockError(
            [{"product_id": product.id, "name": product.name, "requested": qty, "available": available}],
            message=f"Not enough stock available. Only {available} items left.",
        )


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ---- operations ------------------------------------------------------------

def add_item(ctx: RequestContext, product_id: int, qty=1) -> Cart:
    qty = validate_quantity(qty)
    product = catalog.get_product(product_id)
    try:
        cart = get_or_create_cart(ctx)
        item = cart.find_item(product.id)
        if item:
            # merge instead of duplicating the line
            new_qty = min(item.quantity + qty, _max_q())
            _check_stock(product, new_qty)
            item.quantity = new_qty
        else:
            _check_stock(product, qty)
            cart.items.append(CartItem(product_id=product.id, quantity=qty, added_at=utcnow()))
    except Exception:
        db.session.rollback()
        raise

    _commit()
    logger.info("cart add user=%s product=%s qty=%s", ctx.user_id, product_id, qty)
    return cart


def update_item(ctx: RequestContext, product_id: int, qty) -> Cart:
    qty = validate_quantity(qty)
    cart = _require_cart(ctx)
    item = cart.find_item(product_id)
    if not item:
        raise NotFoundError("Product not found in cart", details={"product_id": product_id})

    product = catalog.get_product(product_id)
    _check_stock(product, qty)
    item.quantity = qty
    _commit()
    logger.info("cart update user=%s product=%s qty=%s", ctx.user_id, product_id, qty)
    return cart


def remove_item(ctx: RequestContext, product_id: int) -> Cart:
    cart = _require_cart(ctx)
    item = cart.find_item(product_id)
    if not item:
        raise NotFoundError("Product not found in cart", details={"product_id": product_id})
    cart.items.remove(item)
    _commit()
    logger.info("cart remove user=%s product=%s", ctx.user_id, product_id)
    return cart


def clear(ctx: RequestContext) -> None:
    cart = get_cart(ctx)
    if cart:
        db.session.delete(cart)
        _commit()
    logger.info("cart cleared user=%s", ctx.user_id)


def apply_coupon(ctx: RequestContext, code) -> Cart:
    code = normalize_code(code)
    if not code:
        raise ValidationError("Coupon code is required")

    coupon = coupon_service.find_valid(code)
    if not coupon:
        raise ValidationError("Invalid or expired coupon", details={"code": code})

    cart = _require_cart(ctx)
    cart.coupon_id = coupon.id
    _commit()
    logger.info("cart coupon applied user=%s code=%s", ctx.user_id, code)
    return cart


def remove_coupon(ctx: RequestContext) -> Cart:
    cart = _require_cart(ctx)
    cart.coupon_id = None
    _commit()
    logger.info("cart coupon removed user=%s", ctx.user_id)
    return cart


def get_preview(ctx: RequestContext) -> dict:
    """Advisory totals; checkout recomputes everything from scratch."""
    cart = get_cart(ctx)
    if not cart or not cart.items:
        return {"items": [], "coupon": None, "total_price": 0.0, "discount": 0.0, "total_after_discount": 0.0}

    products = catalog.load_products(cart.product_ids())
    lines = []
    total = Decimal("0")
    for it in cart.items:
        p = products.get(it.product_id)
        price = D(p.price) if p else Decimal("0")
        line_total = round_money(price * it.quantity)
        total += line_total
        lines.append({
            **it.as_api(),
            "unit_price": float(price),
            "line_total": float(line_total),
            "in_stock": bool(p and p.quantity >= it.quantity),
        })
    total = round_money(total)

    discount = Decimal("0")
    coupon_code = None
    hint = cart.coupon
    if hint is not None:
        coupon = coupon_service.find_valid(hint.code)
        # stale or inapplicable hints are dropped silently here
        if coupon and not coupon_service.check_for_order(coupon, total, cart.product_ids(), ctx.user_id):
            discount = coupon_service.compute_discount(coupon, total)
            coupon_code = coupon.code

    return {
        "items": lines,
        "coupon": coupon_code,
        "total_price": float(total),
        "discount": float(discount),
        "total_after_discount": float(round_money(max(total - discount, Decimal("0")))),
    }
