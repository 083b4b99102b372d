# storefront/order/routes.py
from flask import request

from ..services import checkout, order_service
from ..utils.api import ok
from ..utils.decorators import current_context, login_required
from . import bp


def _body():
    return request.get_json(silent=True) or {}


def _page_args():
    page = max(request.args.get("page", 1, type=int), 1)
    per = min(max(request.args.get("per_page", 20, type=int), 1), 100)
    return page, per


@bp.post("")
@login_required
def create_order():
    """
    Body:
      - shipping_address: {fullName, address, city, state, postalCode, country, phone?}
      - payment_method: stripe|paypal|cod
      - coupon_code (optional, falls back to the coupon applied on the cart)
    Header Idempotency-Key (optional): retries with the same key return the first order.
    """
    ctx = current_context()
    data = _body()
    key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
    order, created = checkout.create_order(
        ctx,
        data.get("shipping_address") or data.get("shippingAddress"),
        data.get("payment_method") or data.get("paymentMethod"),
        coupon_code=data.get("coupon_code") or data.get("couponCode"),
        idempotency_key=key,
    )
    if created:
        return ok("Order created", order.as_api(), 201)
    return ok("Order already created", order.as_api(), 200)


@bp.get("")
@login_required
def my_orders():
    page, per = _page_args()
    paged = order_service.list_my_orders(current_context(), page, per)
    return ok("orders", {
        "page": page,
        "per_page": per,
        "total": paged.total,
        "items": [o.as_api() for o in paged.items],
    })


@bp.get("/<int:order_id>")
@login_required
def get_order(order_id: int):
    o = order_service.get_order(current_context(), order_id)
    return ok("order", o.as_api())


@bp.get("/<int:order_id>/payment-status")
@login_required
def payment_status(order_id: int):
    o = order_service.get_order(current_context(), order_id)
    return ok("payment status", o.payment_status())


@bp.put("/<int:order_id>/cancel")
@login_required
def cancel(order_id: int):
    o = order_service.cancel_order(current_context(), order_id)
    return ok("Order cancelled", o.as_api())


@bp.post("/<int:order_id>/return")
@login_required
def request_return(order_id: int):
    o = order_service.request_return(current_context(), order_id, _body().get("reason"))
    return ok("Return requested", o.as_api())
