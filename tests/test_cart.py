from decimal import Decimal

import pytest

from storefront.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.extensions import db
from storefront.model import Cart, Product
from storefront.services import cart_service


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def ctx(user, ctx_for):
    return ctx_for(user)


def test_add_creates_cart_and_line(ctx, make_product):
    p = make_product(price="12.50", quantity=5)
    cart = cart_service.add_item(ctx, p.id, 2)
    assert [(i.product_id, i.quantity) for i in cart.items] == [(p.id, 2)]


def test_add_same_product_merges_and_caps(ctx, make_product):
    p = make_product(quantity=50)
    cart_service.add_item(ctx, p.id, 7)
    cart = cart_service.add_item(ctx, p.id, 7)
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 10


def test_configured_quantity_cap_is_stored(app, ctx, make_product):
    app.config["MAX_CART_QTY"] = 15
    p = make_product(quantity=50)
    cart_service.add_item(ctx, p.id, 12)
    db.session.expire_all()
    assert cart_service.get_cart(ctx).items[0].quantity == 12
    with pytest.raises(ValidationError):
        cart_service.add_item(ctx, p.id, 16)


@pytest.mark.parametrize("qty", [0, 11, -1, "abc", 2.5])
def test_quantity_bounds(ctx, make_product, qty):
    p = make_product()
    with pytest.raises(ValidationError):
        cart_service.add_item(ctx, p.id, qty)


def test_add_more_than_stock(ctx, make_product):
    p = make_product(quantity=2)
    with pytest.raises(InsufficientStockError) as exc:
        cart_service.add_item(ctx, p.id, 3)
    assert exc.value.items[0]["available"] == 2
    assert Cart.query.count() == 0


def test_inactive_or_missing_product(ctx, make_product):
    p = make_product(status=False)
    with pytest.raises(NotFoundError):
        cart_service.add_item(ctx, p.id, 1)
    with pytest.raises(NotFoundError):
        cart_service.add_item(ctx, 9999, 1)


def test_update_and_remove(ctx, make_product):
    p = make_product(quantity=5)
    cart_service.add_item(ctx, p.id, 1)
    cart = cart_service.update_item(ctx, p.id, 4)
    assert cart.items[0].quantity == 4
    with pytest.raises(InsufficientStockError):
        cart_service.update_item(ctx, p.id, 6)
    cart = cart_service.remove_item(ctx, p.id)
    assert cart.items == []
    with pytest.raises(NotFoundError):
        cart_service.remove_item(ctx, p.id)


def test_cart_never_touches_stock(ctx, make_product):
    p = make_product(quantity=5)
    cart_service.add_item(ctx, p.id, 3)
    assert db.session.get(Product, p.id).quantity == 5


def test_clear_deletes_cart(ctx, make_product):
    p = make_product()
    cart_service.add_item(ctx, p.id, 1)
    cart_service.clear(ctx)
    assert cart_service.get_cart(ctx) is None


def test_apply_invalid_coupon(ctx, make_product):
    p = make_product()
    cart_service.add_item(ctx, p.id, 1)
    with pytest.raises(ValidationError, match="Invalid or expired coupon"):
        cart_service.apply_coupon(ctx, "GHOST")


def test_preview_with_coupon(ctx, make_product, make_coupon):
    p = make_product(price="25.00", quantity=10)
    make_coupon(code="SAVE10", discount_type="percent", discount_value="10")
    cart_service.add_item(ctx, p.id, 2)
    cart_service.apply_coupon(ctx, "save10")

    preview = cart_service.get_preview(ctx)
    assert preview["coupon"] == "SAVE10"
    assert preview["total_price"] == 50.0
    assert preview["discount"] == 5.0
    assert preview["total_after_discount"] == 45.0
    assert preview["items"][0]["in_stock"] is True


def test_preview_drops_inapplicable_coupon_silently(ctx, make_product, make_coupon):
    p = make_product(price="10.00")
    make_coupon(code="BIGSPEND", min_purchase="100")
    cart_service.add_item(ctx, p.id, 1)
    cart_service.apply_coupon(ctx, "BIGSPEND")

    preview = cart_service.get_preview(ctx)
    assert preview["coupon"] is None
    assert preview["discount"] == 0.0
    assert preview["total_after_discount"] == 10.0


def test_preview_uses_current_price(ctx, make_product):
    p = make_product(price="10.00")
    cart_service.add_item(ctx, p.id, 2)
    p.price = Decimal("12.00")
    db.session.commit()
    assert cart_service.get_preview(ctx)["total_price"] == 24.0
