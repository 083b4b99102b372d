from decimal import Decimal

import pytest

from storefront.errors import (
    ConflictError,
    CouponInvalidError,
    EmptyCartError,
    InsufficientStockError,
    ValidationError,
)
from storefront.extensions import db
from storefront.model import Cart, Coupon, Notification, Order, Product
from storefront.model.order import PENDING
from storefront.services import catalog, checkout, coupon_service


def stock(product_id):
    return db.session.get(Product, product_id).quantity


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def ctx(user, ctx_for):
    return ctx_for(user)


@pytest.fixture
def products(make_product):
    return make_product(name="Keyboard", price="30.00", quantity=5), make_product(name="Mouse", price="15.00", quantity=3)


class TestHappyPath:
    def test_order_snapshot_and_totals(self, user, ctx, products, fill_cart, address):
        kb, mouse = products
        fill_cart(user, (kb, 2), (mouse, 1))

        order, created = checkout.create_order(ctx, address, "stripe")

        assert created is True
        assert order.status == PENDING and order.code.startswith("ORD-")
        assert order.items_price == Decimal("75.00")
        assert order.discount_amount == Decimal("0.00")
        assert order.shipping_price == Decimal("10.00")
        assert order.tax_price == Decimal("7.50")
        assert order.total_price == Decimal("92.50")
        assert order.totals_balance()
        assert [(i.name, i.quantity, i.unit_price) for i in order.items] == [
            ("Keyboard", 2, Decimal("30.00")),
            ("Mouse", 1, Decimal("15.00")),
        ]
        assert order.items[0].ref.kind.value == "product"

    def test_side_effects(self, user, ctx, products, fill_cart, address):
        kb, mouse = products
        fill_cart(user, (kb, 2), (mouse, 3))

        order, _ = checkout.create_order(ctx, address, "cod")

        assert stock(kb.id) == 3
        assert stock(mouse.id) == 0
        cart = Cart.query.filter_by(user_id=user.id).one()
        assert cart.items == [] and cart.coupon_id is None
        assert Notification.query.filter_by(order_id=order.id, kind="order_confirmed").count() == 1

    def test_snapshot_survives_price_change(self, user, ctx, products, fill_cart, address):
        kb, _ = products
        fill_cart(user, (kb, 1))
        order, _ = checkout.create_order(ctx, address, "stripe")
        kb.price = Decimal("99.00")
        db.session.commit()
        db.session.refresh(order)
        assert order.items[0].unit_price == Decimal("30.00")

    @pytest.mark.parametrize("qty,shipping", [(4, "10.00"), (5, "0.00")])
    def test_free_shipping_threshold(self, user, ctx, make_product, fill_cart, address, qty, shipping):
        # 4 x 25 = 100.00 still pays shipping, 125.00 does not
        p = make_product(price="25.00", quantity=10)
        fill_cart(user, (p, qty))
        order, _ = checkout.create_order(ctx, address, "stripe")
        assert order.shipping_price == Decimal(shipping)


class TestCoupons:
    def test_explicit_coupon(self, user, ctx, products, fill_cart, make_coupon, address):
        kb, mouse = products
        c = make_coupon(code="SAVE10", discount_type="percent", discount_value="10")
        fill_cart(user, (kb, 2), (mouse, 1))

        order, _ = checkout.create_order(ctx, address, "stripe", coupon_code="save10")

        assert order.discount_amount == Decimal("7.50")
        assert order.total_price == Decimal("85.00")
        assert order.coupon_applied["code"] == "SAVE10"
        assert order.coupon_applied["amount"] == "7.50"
        assert order.totals_balance()
        db.session.refresh(c)
        assert c.times_used == 1

    def test_cart_hint_used_when_no_code(self, user, ctx, products, fill_cart, make_coupon, address):
        kb, _ = products
        c = make_coupon(code="FIVE", discount_type="fixed", discount_value="5")
        fill_cart(user, (kb, 1), coupon=c)
        order, _ = checkout.create_order(ctx, address, "stripe")
        assert order.discount_amount == Decimal("5.00")
        assert order.coupon_code == "FIVE"

    def test_min_purchase_rejects_and_changes_nothing(self, user, ctx, products, fill_cart, make_coupon, address):
        kb, _ = products
        make_coupon(code="BIG", min_purchase="500")
        fill_cart(user, (kb, 1))

        with pytest.raises(CouponInvalidError) as exc:
            checkout.create_order(ctx, address, "stripe", coupon_code="BIG")

        assert exc.value.code == "BIG"
        assert Order.query.count() == 0
        assert stock(kb.id) == 5
        assert len(Cart.query.filter_by(user_id=user.id).one().items) == 1

    def test_unknown_code(self, user, ctx, products, fill_cart, address):
        fill_cart(user, (products[0], 1))
        with pytest.raises(CouponInvalidError):
            checkout.create_order(ctx, address, "stripe", coupon_code="NOSUCH")

    def test_excluded_product(self, user, ctx, products, fill_cart, make_coupon, address):
        kb, mouse = products
        make_coupon(code="NOMICE", excluded=[mouse.id])
        fill_cart(user, (kb, 1), (mouse, 1))
        with pytest.raises(CouponInvalidError):
            checkout.create_order(ctx, address, "stripe", coupon_code="NOMICE")

    def test_per_user_limit(self, user, ctx, make_product, fill_cart, make_coupon, address):
        p = make_product(quantity=10)
        make_coupon(code="ONCEEACH", per_user_limit=1)
        fill_cart(user, (p, 1))
        checkout.create_order(ctx, address, "stripe", coupon_code="ONCEEACH")
        fill_cart(user, (p, 1))
        with pytest.raises(CouponInvalidError):
            checkout.create_order(ctx, address, "stripe", coupon_code="ONCEEACH")

    def test_usage_limit_lost_at_commit_rolls_back(self, user, ctx, products, fill_cart, make_coupon, address, monkeypatch):
        kb, _ = products
        make_coupon(code="LAST", usage_limit=1)
        fill_cart(user, (kb, 2))
        monkeypatch.setattr(coupon_service, "increment_usage", lambda coupon_id: False)

        with pytest.raises(CouponInvalidError):
            checkout.create_order(ctx, address, "stripe", coupon_code="LAST")

        assert Order.query.count() == 0
        assert stock(kb.id) == 5


class TestStock:
    def test_every_short_item_reported(self, user, ctx, products, fill_cart, address):
        kb, mouse = products
        fill_cart(user, (kb, 2), (mouse, 2))
        kb.quantity = 1
        mouse.quantity = 0
        db.session.commit()

        with pytest.raises(InsufficientStockError) as exc:
            checkout.create_order(ctx, address, "stripe")

        short = {i["product_id"]: i for i in exc.value.items}
        assert set(short) == {kb.id, mouse.id}
        assert short[kb.id]["available"] == 1 and short[kb.id]["requested"] == 2
        assert Order.query.count() == 0

    def test_lost_decrement_race_rolls_back_everything(self, user, ctx, products, fill_cart, address, monkeypatch):
        kb, mouse = products
        fill_cart(user, (kb, 2), (mouse, 1))
        real = catalog.atomic_decrement_stock

        def racing(product_id, qty):
            # another checkout took the mouse between the read and the update
            if product_id == mouse.id:
                return False
            return real(product_id, qty)

        monkeypatch.setattr(catalog, "atomic_decrement_stock", racing)

        with pytest.raises(InsufficientStockError) as exc:
            checkout.create_order(ctx, address, "stripe")

        assert [i["product_id"] for i in exc.value.items] == [mouse.id]
        assert stock(kb.id) == 5
        assert Order.query.count() == 0
        assert len(Cart.query.filter_by(user_id=user.id).one().items) == 2

    def test_inactive_product_is_unavailable(self, user, ctx, products, fill_cart, address):
        kb, _ = products
        fill_cart(user, (kb, 1))
        kb.status = False
        db.session.commit()
        with pytest.raises(InsufficientStockError):
            checkout.create_order(ctx, address, "stripe")


class TestIdempotency:
    def test_replay_returns_same_order(self, user, ctx, products, fill_cart, address):
        kb, _ = products
        fill_cart(user, (kb, 2))

        first, created = checkout.create_order(ctx, address, "stripe", idempotency_key="abc-123")
        again, created_again = checkout.create_order(ctx, address, "stripe", idempotency_key="abc-123")

        assert created and not created_again
        assert again.id == first.id
        assert Order.query.count() == 1
        assert stock(kb.id) == 3

    def test_key_of_another_user_conflicts(self, user, ctx, products, fill_cart, address, make_user, ctx_for):
        kb, _ = products
        fill_cart(user, (kb, 1))
        checkout.create_order(ctx, address, "stripe", idempotency_key="shared")

        other = make_user()
        fill_cart(other, (kb, 1))
        with pytest.raises(ConflictError):
            checkout.create_order(ctx_for(other), address, "stripe", idempotency_key="shared")


class TestValidation:
    def test_empty_cart(self, ctx, address):
        with pytest.raises(EmptyCartError):
            checkout.create_order(ctx, address, "stripe")

    def test_missing_address_fields(self, user, ctx, products, fill_cart):
        fill_cart(user, (products[0], 1))
        with pytest.raises(ValidationError) as exc:
            checkout.create_order(ctx, {"fullName": "A"}, "stripe")
        assert "city" in exc.value.details["missing"]

    def test_unknown_payment_method(self, user, ctx, products, fill_cart, address):
        fill_cart(user, (products[0], 1))
        with pytest.raises(ValidationError):
            checkout.create_order(ctx, address, "bitcoin")

    def test_coupon_row_untouched_on_failure(self, user, ctx, products, fill_cart, make_coupon, address):
        kb, _ = products
        make_coupon(code="SAVE10")
        fill_cart(user, (kb, 9))
        with pytest.raises(InsufficientStockError):
            checkout.create_order(ctx, address, "stripe", coupon_code="SAVE10")
        assert Coupon.query.filter_by(code="SAVE10").one().times_used == 0


def test_save10_scenario(user, ctx, make_product, make_coupon, fill_cart, address):
    p = make_product(price="100.00", quantity=5)
    make_coupon(code="SAVE10", discount_type="percent", discount_value="10", min_purchase="50")
    fill_cart(user, (p, 1))

    order, _ = checkout.create_order(ctx, address, "stripe", coupon_code="SAVE10")

    assert order.items_price == Decimal("100.00")
    assert order.discount_amount == Decimal("10.00")
    assert order.tax_price == Decimal("10.00")
    assert order.shipping_price == Decimal("10.00")
    assert order.total_price == Decimal("110.00")
    assert abs(order.total_price - order.expected_total()) < Decimal("0.01")
    assert stock(p.id) == 4


def test_second_buyer_of_last_unit_is_refused(make_user, ctx_for, make_product, fill_cart, address):
    p = make_product(quantity=1)
    first, second = make_user(), make_user()
    fill_cart(first, (p, 1))
    fill_cart(second, (p, 1))

    checkout.create_order(ctx_for(first), address, "stripe")
    with pytest.raises(InsufficientStockError) as exc:
        checkout.create_order(ctx_for(second), address, "stripe")

    assert exc.value.items[0]["available"] == 0
    assert stock(p.id) == 0
    assert Order.query.count() == 1
