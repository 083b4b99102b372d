# storefront/model/order.py
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from ..errors import ConflictError
from ..extensions import db
from ..utils.dates import isoformat, utcnow
from ..utils.money import D, round_money
from .types import ItemKind, ItemRef

# ---- lifecycle -------------------------------------------------------------
PENDING = "pending"
PAID = "paid"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
RETURN_REQUESTED = "return_requested"
REFUNDED = "refunded"

STATUSES = (PENDING, PAID, SHIPPED, DELIVERED, CANCELLED, RETURN_REQUESTED, REFUNDED)
TERMINAL = (CANCELLED, REFUNDED)

# admin-initiated refunds
DIRECT_REFUNDABLE = (PAID, SHIPPED, DELIVERED)
# processor-initiated refunds can also land while a return is pending
SETTLED = (PAID, SHIPPED, DELIVERED, RETURN_REQUESTED)

RETURN_NONE = "none"
RETURN_REQUESTED_STATUS = "requested"
RETURN_APPROVED = "approved"
RETURN_REJECTED = "rejected"

PAYMENT_METHODS = ("stripe", "paypal", "cod")

TOTAL_TOLERANCE = Decimal("0.01")


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), unique=True, index=True)  # e.g., "ORD-20251022-..."
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)

    # retried checkouts carrying the same key resolve to this order
    idempotency_key = db.Column(db.String(255), unique=True, nullable=True, index=True)

    shipping_address = db.Column(db.JSON, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False, default="stripe")

    # Money snapshot
    items_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)
    coupon_code = db.Column(db.String(50), nullable=True, index=True)
    coupon_applied = db.Column(db.JSON, nullable=True)

    # Payment
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    payment_result = db.Column(db.JSON, nullable=True)
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime)

    # Fulfilment
    shipped_at = db.Column(db.DateTime)
    is_delivered = db.Column(db.Boolean, nullable=False, default=False)
    delivered_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    # Returns / refunds
    return_status = db.Column(db.String(16), nullable=False, default=RETURN_NONE)
    return_reason = db.Column(db.String(500))
    return_rejection_reason = db.Column(db.String(500))
    return_requested_at = db.Column(db.DateTime)
    return_processed_at = db.Column(db.DateTime)
    refunded_at = db.Column(db.DateTime)
    refund_result = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # bumped on every write; an UPDATE built from a stale read matches no row
    version_id = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

    items = db.relationship(
        "OrderItem",
        backref="order",
        cascade="all, delete-orphan",
        lazy="joined",
        order_by="OrderItem.id.asc()",
    )

    # ---- invariants --------------------------------------------------------
    def expected_total(self) -> Decimal:
        return round_money(
            D(self.items_price) - D(self.discount_amount) + D(self.tax_price) + D(self.shipping_price)
        )

    def totals_balance(self) -> bool:
        items_sum = round_money(sum((D(i.unit_price) * i.quantity for i in self.items), Decimal("0")))
        return (
            abs(items_sum - D(self.items_price)) < TOTAL_TOLERANCE
            and abs(self.expected_total() - D(self.total_price)) < TOTAL_TOLERANCE
        )

    # ---- state machine -----------------------------------------------------
    def _require(self, ok: bool, message: str):
        if not ok:
            raise ConflictError(message, details={"order_id": self.id, "status": self.status})

    def mark_as_paid(self, payment_result: dict, now=None):
        self._require(not self.is_paid, "Order is already paid")
        self._require(self.status == PENDING, f"Cannot pay for a {self.status} order")
        self.is_paid = True
        self.paid_at = now or utcnow()
        self.payment_result = payment_result
        self.status = PAID

    def mark_shipped(self, now=None):
        self._require(self.status == PAID, "Only paid orders can be shipped")
        self.shipped_at = now or utcnow()
        self.status = SHIPPED

    def mark_delivered(self, now=None):
        self._require(self.is_paid, "Order must be paid before delivery")
        self._require(not self.is_delivered, "Order is already delivered")
        self._require(self.status in (PAID, SHIPPED), f"Cannot deliver a {self.status} order")
        self.is_delivered = True
        self.delivered_at = now or utcnow()
        self.status = DELIVERED

    def cancel(self, now=None):
        self._require(not self.is_paid, "Paid orders cannot be cancelled - request a refund instead")
        self._require(self.status == PENDING, f"Cannot cancel a {self.status} order")
        self.cancelled_at = now or utcnow()
        self.status = CANCELLED

    def request_return(self, reason: str | None, window_days: int, now=None):
        now = now or utcnow()
        self._require(self.status != REFUNDED, "Order already refunded")
        self._require(self.is_delivered and self.delivered_at is not None,
                      "Order must be delivered before return")
        self._require(self.return_status != RETURN_REQUESTED_STATUS, "Return already requested")
        self._require(self.status == DELIVERED, f"Cannot return a {self.status} order")
        self._require(now <= self.delivered_at + timedelta(days=window_days), "Return window has expired")
        self.status = RETURN_REQUESTED
        self.return_status = RETURN_REQUESTED_STATUS
        self.return_reason = reason
        self.return_requested_at = now

    @property
    def has_pending_return(self) -> bool:
        return self.status == RETURN_REQUESTED and self.return_status == RETURN_REQUESTED_STATUS

    def _require_pending_return(self):
        self._require(self.has_pending_return, "No pending return request for this order")

    def approve_return(self, refund_result: dict, now=None):
        self._require_pending_return()
        now = now or utcnow()
        self.return_status = RETURN_APPROVED
        self.return_processed_at = now
        self._refund(refund_result, now)

    def reject_return(self, reason: str | None, now=None):
        self._require_pending_return()
        self.return_status = RETURN_REJECTED
        self.return_processed_at = now or utcnow()
        self.return_rejection_reason = reason or "Not specified"
        self.status = DELIVERED

    def mark_refunded(self, refund_result: dict, now=None, allowed=SETTLED):
        self._require(self.status != REFUNDED, "Order is already refunded")
        self._require(self.is_paid, "Cannot refund an unpaid order")
        self._require(self.status in allowed, f"Cannot refund a {self.status} order")
        if self.status == RETURN_REQUESTED:
            self.return_status = RETURN_APPROVED
            self.return_processed_at = now or utcnow()
        self._refund(refund_result, now or utcnow())

    def _refund(self, refund_result: dict, now):
        self.status = REFUNDED
        self.refunded_at = now
        self.refund_result = refund_result
        if self.payment_result:
            self.payment_result = {**self.payment_result, "status": "refunded"}

    # ---- serialisation -----------------------------------------------------
    def payment_status(self):
        return {
            "order_id": self.id,
            "is_paid": self.is_paid,
            "paid_at": isoformat(self.paid_at),
            "payment_method": self.payment_method,
            "payment_status": (self.payment_result or {}).get("status"),
            "status": self.status,
        }

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "user_id": self.user_id,
            "status": self.status,
            "shipping_address": self.shipping_address,
            "payment_method": self.payment_method,
            "money": {
                "items_price": float(self.items_price or 0),
                "discount_amount": float(self.discount_amount or 0),
                "tax_price": float(self.tax_price or 0),
                "shipping_price": float(self.shipping_price or 0),
                "total_price": float(self.total_price or 0),
            },
            "coupon_applied": self.coupon_applied,
            "items": [i.as_api() for i in self.items],
            "is_paid": self.is_paid,
            "paid_at": isoformat(self.paid_at),
            "payment_result": self.payment_result,
            "shipped_at": isoformat(self.shipped_at),
            "is_delivered": self.is_delivered,
            "delivered_at": isoformat(self.delivered_at),
            "cancelled_at": isoformat(self.cancelled_at),
            "return": {
                "status": self.return_status,
                "reason": self.return_reason,
                "rejection_reason": self.return_rejection_reason,
                "requested_at": isoformat(self.return_requested_at),
                "processed_at": isoformat(self.return_processed_at),
            },
            "refunded_at": isoformat(self.refunded_at),
            "refund_result": self.refund_result,
            "created_at": isoformat(self.created_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # tagged reference, see ItemRef; not an ownership relation
    item_kind = db.Column(db.String(16), nullable=False, default=ItemKind.PRODUCT.value)
    product_id = db.Column(db.Integer, nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    image_url = db.Column(db.String(1024))
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    @property
    def ref(self) -> ItemRef:
        return ItemRef.parse(self.item_kind, self.product_id)

    def as_api(self):
        return {
            "item": self.ref.as_api(),
            "product_id": self.product_id,
            "name": self.name,
            "image_url": self.image_url,
            "unit_price": float(self.unit_price or 0),
            "quantity": self.quantity,
            "line_total": float(self.line_total or 0),
        }
