# storefront/cart/routes.py
from flask import request

from ..errors import ValidationError
from ..services import cart_service
from ..utils.api import ok
from ..utils.decorators import current_context, login_required
from . import bp


def _body():
    return request.get_json(silent=True) or {}


def _cart_payload(ctx):
    return cart_service.get_preview(ctx)


@bp.get("")
@login_required
def get_cart():
    ctx = current_context()
    return ok("cart", _cart_payload(ctx))


@bp.post("/items")
@login_required
def add_item():
    ctx = current_context()
    data = _body()
    try:
        product_id = int(data.get("product_id"))
    except (TypeError, ValueError):
        raise ValidationError("product_id is required")
    cart_service.add_item(ctx, product_id, data.get("quantity", 1))
    return ok("Item added to cart", _cart_payload(ctx), 201)


@bp.patch("/items/<int:product_id>")
@login_required
def update_item(product_id: int):
    ctx = current_context()
    cart_service.update_item(ctx, product_id, _body().get("quantity"))
    return ok("Cart updated", _cart_payload(ctx))


@bp.delete("/items/<int:product_id>")
@login_required
def remove_item(product_id: int):
    ctx = current_context()
    cart_service.remove_item(ctx, product_id)
    return ok("Item removed from cart", _cart_payload(ctx))


@bp.delete("")
@login_required
def clear_cart():
    ctx = current_context()
    cart_service.clear(ctx)
    return ok("Cart cleared")


@bp.post("/coupon")
@login_required
def apply_coupon():
    ctx = current_context()
    cart_service.apply_coupon(ctx, _body().get("code"))
    return ok("Coupon applied", _cart_payload(ctx))


@bp.delete("/coupon")
@login_required
def remove_coupon():
    ctx = current_context()
    cart_service.remove_coupon(ctx)
    return ok("Coupon removed", _cart_payload(ctx))
