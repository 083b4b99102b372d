# storefront/admin/routes.py
from flask import request

from ..services import order_service
from ..utils.api import ok
from ..utils.decorators import admin_required, current_context
from . import bp


def _body():
    return request.get_json(silent=True) or {}


@bp.get("/orders")
@admin_required
def list_orders():
    """
    Query params:
      - page, per_page
      - status=pending|paid|shipped|delivered|cancelled|return_requested|refunded
      - user_id=...
      - q=ORD-... or a payment intent id
    """
    page = max(request.args.get("page", 1, type=int), 1)
    per = min(max(request.args.get("per_page", 20, type=int), 1), 100)
    paged = order_service.list_orders(
        current_context(),
        status=request.args.get("status"),
        user_id=request.args.get("user_id", type=int),
        q=request.args.get("q"),
        page=page,
        per_page=per,
    )
    return ok("orders", {
        "page": page,
        "per_page": per,
        "total": paged.total,
        "items": [o.as_api() for o in paged.items],
    })


@bp.put("/orders/<int:order_id>/ship")
@admin_required
def ship(order_id: int):
    o = order_service.mark_shipped(current_context(), order_id)
    return ok("Order marked as shipped", o.as_api())


@bp.put("/orders/<int:order_id>/deliver")
@admin_required
def deliver(order_id: int):
    o = order_service.mark_delivered(current_context(), order_id)
    return ok("Order marked as delivered", o.as_api())


@bp.put("/orders/<int:order_id>/mark-paid")
@admin_required
def mark_paid(order_id: int):
    o = order_service.admin_mark_paid(current_context(), order_id, _body().get("reference"))
    return ok("Order marked as paid", o.as_api())


@bp.post("/orders/<int:order_id>/refund")
@admin_required
def refund(order_id: int):
    data = _body()
    o = order_service.process_refund(current_context(), order_id, data.get("reason"), data.get("amount"))
    return ok("Refund processed", o.as_api())


@bp.put("/orders/<int:order_id>/process-return")
@admin_required
def process_return(order_id: int):
    data = _body()
    o = order_service.process_return(
        current_context(), order_id, data.get("action"),
        data.get("rejection_reason") or data.get("rejectionReason"),
    )
    return ok(f"Return {o.return_status}", o.as_api())
