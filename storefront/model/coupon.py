# --- storefront/model/coupon.py ---

from sqlalchemy.sql import func

from ..extensions import db
from ..utils.dates import isoformat

FIXED = "fixed"
PERCENT = "percent"
DISCOUNT_TYPES = (FIXED, PERCENT)

MIN_CODE_LENGTH = 3
MAX_CODE_LENGTH = 50
MAX_PERCENT_DISCOUNT = 100


def normalize_code(raw) -> str:
    return str(raw or "").strip().upper()


def _csv_to_intset(s: str):
    if not s: return set()
    return {int(x) for x in s.split(",") if x.strip().isdigit()}


def _intset_to_csv(ids) -> str | None:
    ids = sorted({int(i) for i in (ids or [])})
    return ",".join(str(i) for i in ids) or None


class Coupon(db.Model):
    __tablename__ = "coupon"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(MAX_CODE_LENGTH), unique=True, nullable=False, index=True)
    description = db.Column(db.String(500))

    # "percent" or "fixed"
    discount_type = db.Column(db.String(16), nullable=False, default=FIXED)
    discount_value = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, default=True, index=True)

    # Optional constraints
    min_purchase = db.Column(db.Numeric(12, 2), nullable=True)   # require items price >= this
    max_discount = db.Column(db.Numeric(12, 2), nullable=True)   # cap on computed discount
    valid_from = db.Column(db.DateTime, nullable=False, server_default=func.now())
    valid_to = db.Column(db.DateTime, nullable=False)

    # Usage tracking
    usage_limit = db.Column(db.Integer, nullable=True)           # global usage cap
    times_used = db.Column(db.Integer, nullable=False, default=0)
    per_user_limit = db.Column(db.Integer, nullable=True)

    # Product restrictions, comma separated ids
    applicable_product_ids = db.Column(db.Text, nullable=True)
    excluded_product_ids = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    @property
    def applicable_products(self) -> set:
        return _csv_to_intset(self.applicable_product_ids or "")

    @applicable_products.setter
    def applicable_products(self, ids):
        self.applicable_product_ids = _intset_to_csv(ids)

    @property
    def excluded_products(self) -> set:
        return _csv_to_intset(self.excluded_product_ids or "")

    @excluded_products.setter
    def excluded_products(self, ids):
        self.excluded_product_ids = _intset_to_csv(ids)

    def snapshot(self, amount) -> dict:
        """Frozen copy stored on an order, decoupled from later coupon edits."""
        return {
            "coupon_id": self.id,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
            "max_discount": str(self.max_discount) if self.max_discount is not None else None,
            "amount": str(amount),
        }

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value or 0),
            "min_purchase": float(self.min_purchase) if self.min_purchase is not None else None,
            "max_discount": float(self.max_discount) if self.max_discount is not None else None,
            "valid_from": isoformat(self.valid_from),
            "valid_to": isoformat(self.valid_to),
            "is_active": self.is_active,
            "usage_limit": self.usage_limit,
            "times_used": self.times_used,
            "per_user_limit": self.per_user_limit,
            "applicable_products": sorted(self.applicable_products),
            "excluded_products": sorted(self.excluded_products),
        }
