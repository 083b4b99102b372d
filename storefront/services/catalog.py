# storefront/services/catalog.py
"""Catalog store: live price and stock reads plus guarded stock updates.

Stock is only ever changed with a single conditional UPDATE, never by reading
the row and writing back a computed value.
"""
from sqlalchemy import update

from ..errors import NotFoundError
from ..extensions import db
from ..model import Product
from ..utils.money import D, Money


def get_product(product_id: int, *, active_only: bool = True) -> Product:
    p = db.session.get(Product, product_id)
    if not p or (active_only and p.status is False):
        raise NotFoundError("product not found or inactive", details={"product_id": product_id})
    return p


def load_products(product_ids, *, for_update: bool = False) -> dict:
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    q = db.session.query(Product).filter(Product.id.in_(ids))
    if for_update:
        q = q.with_for_update()
    # bypass identity-map values left over from earlier reads in this session
    q = q.populate_existing()
    return {p.id: p for p in q.all()}


def get_stock(product_id: int) -> int:
    qty = db.session.execute(
        db.select(Product.quantity).where(Product.id == product_id)
    ).scalar_one_or_none()
    if qty is None:
        raise NotFoundError("product not found", details={"product_id": product_id})
    return int(qty)


def get_price(product_id: int) -> Money:
    price = db.session.execute(
        db.select(Product.price).where(Product.id == product_id)
    ).scalar_one_or_none()
    if price is None:
        raise NotFoundError("product not found", details={"product_id": product_id})
    return D(price)


def atomic_decrement_stock(product_id: int, quantity: int) -> bool:
    """Decrement only if enough stock remains; False when the guard fails."""
    res = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.quantity >= quantity)
        .values(quantity=Product.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def increment_stock(product_id: int, quantity: int) -> None:
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(quantity=Product.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
