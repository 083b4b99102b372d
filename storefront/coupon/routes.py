# storefront/coupon/routes.py
from __future__ import annotations

from flask import request

from ..errors import NotFoundError
from ..extensions import db
from ..model import Coupon
from ..services import coupon_service
from ..utils.api import ok
from ..utils.decorators import admin_required
from . import bp


def _get_or_404(coupon_id: int) -> Coupon:
    c = db.session.get(Coupon, coupon_id)
    if not c:
        raise NotFoundError("Coupon not found", details={"coupon_id": coupon_id})
    return c


@bp.post("")
@admin_required
def create_coupon():
    data = request.get_json(silent=True) or {}
    c = coupon_service.create_coupon(data)
    return ok("Coupon created", c.as_api(), 201)


@bp.get("")
@admin_required
def list_coupons():
    q = Coupon.query
    active = request.args.get("active")
    if active is not None:
        q = q.filter(Coupon.is_active == (active.lower() == "true"))
    items = q.order_by(Coupon.id.desc()).all()
    return ok("coupons", {"items": [c.as_api() for c in items], "total": len(items)})


@bp.get("/<int:coupon_id>")
@admin_required
def get_coupon(coupon_id: int):
    return ok("coupon", _get_or_404(coupon_id).as_api())


@bp.patch("/<int:coupon_id>")
@admin_required
def update_coupon(coupon_id: int):
    data = request.get_json(silent=True) or {}
    c = coupon_service.update_coupon(_get_or_404(coupon_id), data)
    return ok("Coupon updated", c.as_api())


@bp.delete("/<int:coupon_id>")
@admin_required
def delete_coupon(coupon_id: int):
    c = _get_or_404(coupon_id)
    # orders keep their coupon snapshot; carts lose the hint via ON DELETE SET NULL
    coupon_service.delete_coupon(c)
    return ok("Coupon deleted", {"id": coupon_id})
