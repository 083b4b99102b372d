"""
Shared fixtures: an app on in-memory SQLite, a gateway double that never
touches the network but verifies webhook signatures for real, factories and
JWT auth headers.
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from flask_jwt_extended import create_access_token

from storefront import create_app
from storefront.context import RequestContext
from storefront.errors import GatewayTimeoutError
from storefront.extensions import db
from storefront.model import Cart, CartItem, Coupon, Order, Product, User
from storefront.services.gateway import (
    EXTENSION_KEY,
    IntentStatus,
    PaymentIntentHandle,
    RefundResult,
    StripeGateway,
)
from storefront.utils.dates import utcnow
from storefront.utils.money import D, from_cents, to_cents

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """StripeGateway with the network calls replaced by in-memory state."""

    def __init__(self):
        super().__init__(api_key="", webhook_secret=WEBHOOK_SECRET, tolerance=300)
        self.intents = {}
        self.refunds = []
        self.customers = []
        self.fail_with = None
        self._seq = 0

    def _next(self, prefix):
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def ensure_customer(self, user):
        self._maybe_fail()
        if user.stripe_customer_id:
            return user.stripe_customer_id
        cid = self._next("cus")
        self.customers.append(cid)
        return cid

    def create_payment_intent(self, order, user, customer_id=None):
        self._maybe_fail()
        pid = self._next("pi")
        self.intents[pid] = IntentStatus(
            id=pid,
            status="requires_payment_method",
            amount_received_cents=0,
            metadata={"order_id": str(order.id), "user_id": str(user.id)},
            receipt_email=user.email,
        )
        return PaymentIntentHandle(id=pid, client_secret=f"{pid}_secret", amount_cents=to_cents(order.total_price))

    def succeed(self, intent_id, amount):
        """Simulate the customer completing the card flow."""
        prev = self.intents[intent_id]
        self.intents[intent_id] = IntentStatus(
            id=intent_id,
            status="succeeded",
            amount_received_cents=to_cents(amount),
            metadata=prev.metadata,
            receipt_email=prev.receipt_email,
        )

    def retrieve_payment_intent(self, intent_id):
        self._maybe_fail()
        return self.intents[intent_id]

    def refund(self, order, amount, reason=None):
        self._maybe_fail()
        rid = self._next("re")
        self.refunds.append((order.id, D(amount), reason))
        return RefundResult(id=rid, amount=from_cents(to_cents(amount)), status="succeeded")


def build_app(db_uri="sqlite://", **overrides):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": db_uri,
        "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "LOG_LEVEL": "WARNING",
    }
    config.update(overrides)
    app = create_app(config)
    app.extensions[EXTENSION_KEY] = FakeGateway()
    return app


@pytest.fixture
def app():
    app = build_app()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app):
    return app.extensions[EXTENSION_KEY]


# ---- factories -------------------------------------------------------------

@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role="user", email=None):
        counter["n"] += 1
        u = User(email=email or f"user{counter['n']}@example.com", name=f"User {counter['n']}", role=role)
        db.session.add(u)
        db.session.commit()
        return u
    return _make


@pytest.fixture
def make_product(app):
    def _make(name="Widget", price="20.00", quantity=10, kind="product", status=True):
        p = Product(name=name, price=Decimal(price), quantity=quantity, kind=kind, status=status)
        db.session.add(p)
        db.session.commit()
        return p
    return _make


@pytest.fixture
def make_coupon(app):
    def _make(code="SAVE10", discount_type="percent", discount_value="10", **kw):
        now = utcnow()
        c = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            is_active=kw.pop("is_active", True),
            valid_from=kw.pop("valid_from", now - timedelta(days=1)),
            valid_to=kw.pop("valid_to", now + timedelta(days=30)),
            times_used=kw.pop("times_used", 0),
        )
        applicable = kw.pop("applicable", None)
        excluded = kw.pop("excluded", None)
        if applicable:
            c.applicable_products = applicable
        if excluded:
            c.excluded_products = excluded
        for k, v in kw.items():
            setattr(c, k, Decimal(str(v)) if k in ("min_purchase", "max_discount") and v is not None else v)
        db.session.add(c)
        db.session.commit()
        return c
    return _make


@pytest.fixture
def fill_cart(app):
    def _fill(user, *lines, coupon=None):
        cart = Cart.query.filter_by(user_id=user.id).first() or Cart(user_id=user.id)
        db.session.add(cart)
        for product, qty in lines:
            cart.items.append(CartItem(product_id=product.id, quantity=qty))
        if coupon is not None:
            cart.coupon_id = coupon.id
        db.session.commit()
        return cart
    return _fill


@pytest.fixture
def ctx_for():
    def _ctx(user):
        return RequestContext(user_id=user.id, role=user.role)
    return _ctx


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}
    return _headers


ADDRESS = {
    "fullName": "Ada Lovelace",
    "address": "12 Analytical St",
    "city": "London",
    "state": "LDN",
    "postalCode": "N1 9GU",
    "country": "GB",
}


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def place_order(app, fill_cart, ctx_for, address):
    """Checkout a cart holding the given (product, qty) lines; returns the Order."""
    from storefront.services import checkout

    def _place(user, *lines, payment_method="stripe", coupon_code=None):
        fill_cart(user, *lines)
        order, _ = checkout.create_order(ctx_for(user), address, payment_method, coupon_code=coupon_code)
        return order
    return _place


def set_status(order: Order, **fields):
    for k, v in fields.items():
        setattr(order, k, v)
    db.session.commit()
    return order


# ---- webhook helpers -------------------------------------------------------

def sign(payload: str, secret: str = WEBHOOK_SECRET, ts: int | None = None) -> str:
    ts = int(time.time()) if ts is None else ts
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def event_payload(event_type, obj, event_id="evt_1", created=None) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    })


def timeout_error():
    return GatewayTimeoutError("payment processor did not respond; outcome unknown")
