# storefront/services/coupon_service.py
from __future__ import annotations

import logging
import re
from decimal import Decimal

from sqlalchemy import or_, update

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..model import Cart, Coupon, Order
from ..model.coupon import (
    DISCOUNT_TYPES,
    MAX_CODE_LENGTH,
    MAX_PERCENT_DISCOUNT,
    MIN_CODE_LENGTH,
    PERCENT,
    normalize_code,
)
from ..model.order import CANCELLED
from ..utils.dates import parse_iso8601, utcnow
from ..utils.money import D, Money, round_money

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^[A-Z0-9-]+$")


# ---- validity --------------------------------------------------------------

def validity_reason(coupon: Coupon, now=None) -> str | None:
    now = now or utcnow()
    if not coupon.is_active:
        return "Coupon is inactive"
    if coupon.valid_from and now < coupon.valid_from:
        return "Coupon is not yet valid"
    if coupon.valid_to and now > coupon.valid_to:
        return "Coupon has expired"
    if coupon.usage_limit is not None and (coupon.times_used or 0) >= coupon.usage_limit:
        return "Coupon usage limit reached"
    return None


def find_valid(code, now=None) -> Coupon | None:
    """Return the coupon if it can be used right now, else None."""
    code = normalize_code(code)
    if len(code) < MIN_CODE_LENGTH:
        return None
    coupon = Coupon.query.filter(Coupon.code == code).first()
    if not coupon:
        return None
    if validity_reason(coupon, now):
        return None
    return coupon


def compute_discount(coupon: Coupon, subtotal) -> Money:
    amount = D(subtotal)
    if amount <= 0:
        return Decimal("0.00")

    if coupon.discount_type == PERCENT:
        discount = amount * D(coupon.discount_value) / Decimal(100)
    else:
        discount = D(coupon.discount_value)

    if coupon.max_discount is not None and discount > D(coupon.max_discount):
        discount = D(coupon.max_discount)
    # never below zero, never above what is being bought
    discount = max(Decimal("0"), min(discount, amount))
    return round_money(discount)


def is_applicable_to_products(coupon: Coupon, product_ids) -> tuple[bool, str | None]:
    ids = {int(i) for i in product_ids}

    allowed = coupon.applicable_products
    if allowed and not ids.issubset(allowed):
        return False, "Coupon is not applicable to some products in the order"

    excluded = coupon.excluded_products
    if excluded and ids & excluded:
        return False, "Coupon cannot be applied to one or more products in the order"

    return True, None


def user_usage_count(coupon: Coupon, user_id: int) -> int:
    return (
        db.session.query(Order.id)
        .filter(Order.user_id == user_id,
                Order.coupon_code == coupon.code,
                Order.status != CANCELLED)
        .count()
    )


def check_for_order(coupon: Coupon, subtotal, product_ids, user_id: int | None = None) -> str | None:
    """Rules evaluated against the actual order contents. Returns a reason or None."""
    if coupon.min_purchase is not None and D(subtotal) < D(coupon.min_purchase):
        return f"subtotal must be >= {D(coupon.min_purchase):.2f}"

    ok, reason = is_applicable_to_products(coupon, product_ids)
    if not ok:
        return reason

    if user_id is not None and coupon.per_user_limit is not None:
        if user_usage_count(coupon, user_id) >= coupon.per_user_limit:
            return "Coupon per-user limit reached"
    return None


def increment_usage(coupon_id: int) -> bool:
    """Bump times_used unless that would cross usage_limit."""
    res = db.session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id,
               or_(Coupon.usage_limit.is_(None), Coupon.times_used < Coupon.usage_limit))
        .values(times_used=Coupon.times_used + 1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# ---- admin payload handling ------------------------------------------------

def _opt_money(data, key):
    v = data.get(key)
    if v is None or v == "":
        return None
    try:
        m = D(v)
    except ArithmeticError:
        raise ValidationError(f"{key} must be numeric")
    if m < 0:
        raise ValidationError(f"{key} must be non-negative")
    return m


def _opt_int(data, key, minimum):
    v = data.get(key)
    if v is None or v == "":
        return None
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")
    if n < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return n


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _opt_bool(data, key, default=None):
    v = data.get(key, default)
    if isinstance(v, bool):
        return v
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    s = str(v).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValidationError(f"{key} must be true or false")


def _opt_id_list(data, key) -> set:
    raw = data.get(key)
    if raw is None or raw == "":
        return set()
    if isinstance(raw, str):
        raw = [p for p in raw.split(",") if p.strip()]
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"{key} must be a list of product ids")
    ids = set()
    for v in raw:
        if isinstance(v, bool):
            raise ValidationError(f"{key} must contain product ids only")
        try:
            n = int(str(v).strip())
        except ValueError:
            raise ValidationError(f"{key} must contain product ids only")
        if n < 1:
            raise ValidationError(f"{key} must contain product ids only")
        ids.add(n)
    return ids


def _apply_payload(c: Coupon, data: dict, *, partial: bool):
    if "code" in data or not partial:
        code = normalize_code(data.get("code"))
        if not (MIN_CODE_LENGTH <= len(code) <= MAX_CODE_LENGTH):
            raise ValidationError(f"code must be {MIN_CODE_LENGTH}-{MAX_CODE_LENGTH} characters")
        if not _CODE_RE.match(code):
            raise ValidationError("Coupon code can only contain letters, numbers, and hyphens")
        q = Coupon.query.filter(Coupon.code == code)
        if c.id is not None:
            q = q.filter(Coupon.id != c.id)
        clash = q.first()
        if clash:
            raise ConflictError("Coupon code already exists", details={"code": code})
        c.code = code

    if "discount_type" in data or not partial:
        dtype = (data.get("discount_type") or "").lower().strip()
        if dtype not in DISCOUNT_TYPES:
            raise ValidationError("discount_type must be 'percent' or 'fixed'")
        c.discount_type = dtype

    if "discount_value" in data or not partial:
        value = _opt_money(data, "discount_value")
        if value is None:
            raise ValidationError("discount_value is required")
        c.discount_value = value

    for key in ("min_purchase", "max_discount"):
        if key in data:
            setattr(c, key, _opt_money(data, key))

    if "usage_limit" in data:
        c.usage_limit = _opt_int(data, "usage_limit", 0)
    if "per_user_limit" in data:
        c.per_user_limit = _opt_int(data, "per_user_limit", 1)

    for key in ("valid_from", "valid_to"):
        if key in data or (key == "valid_to" and not partial):
            dt = parse_iso8601(data.get(key))
            if not dt:
                raise ValidationError(f"Invalid datetime format for {key}")
            setattr(c, key, dt)
    if c.valid_from is None:
        c.valid_from = utcnow()

    if "is_active" in data:
        c.is_active = _opt_bool(data, "is_active")
    if "description" in data:
        c.description = (data.get("description") or "").strip() or None
    if "applicable_products" in data:
        c.applicable_products = _opt_id_list(data, "applicable_products")
    if "excluded_products" in data:
        c.excluded_products = _opt_id_list(data, "excluded_products")

    # cross-field rules
    if c.discount_type == PERCENT and D(c.discount_value) > MAX_PERCENT_DISCOUNT:
        raise ValidationError(f"Percentage discount cannot exceed {MAX_PERCENT_DISCOUNT}%")
    if c.valid_to <= c.valid_from:
        raise ValidationError("valid_to must be after valid_from")
    if c.discount_type != PERCENT and c.max_discount is not None and D(c.max_discount) < D(c.discount_value):
        raise ValidationError("max_discount cannot be less than discount_value for fixed type")
    if c.usage_limit is not None and (c.times_used or 0) > c.usage_limit:
        raise ValidationError("times_used cannot exceed usage_limit")


def create_coupon(data: dict) -> Coupon:
    c = Coupon(is_active=_opt_bool(data, "is_active", True), times_used=0)
    _apply_payload(c, data, partial=False)
    db.session.add(c)
    db.session.commit()
    logger.info("coupon created code=%s type=%s value=%s", c.code, c.discount_type, c.discount_value)
    return c


def update_coupon(c: Coupon, data: dict) -> Coupon:
    try:
        _apply_payload(c, data, partial=True)
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("coupon updated code=%s", c.code)
    return c


def delete_coupon(c: Coupon) -> None:
    try:
        db.session.execute(
            update(Cart).where(Cart.coupon_id == c.id).values(coupon_id=None)
            .execution_options(synchronize_session=False)
        )
        db.session.delete(c)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("coupon deleted code=%s", c.code)
