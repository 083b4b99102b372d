# storefront/model/product.py
from sqlalchemy.sql import func

from ..extensions import db
from .types import ItemKind, ItemRef


class Product(db.Model):
    __tablename__ = "product"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_product_quantity_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    slug = db.Column(db.String(255), index=True)
    kind = db.Column(db.String(16), nullable=False, default=ItemKind.PRODUCT.value)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=0)   # stock on hand
    status = db.Column(db.Boolean, default=True)                  # active in catalog
    image_url = db.Column(db.String(1024))

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    @property
    def ref(self) -> ItemRef:
        return ItemRef.parse(self.kind or ItemKind.PRODUCT.value, self.id)

    def as_api(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "kind": self.kind,
            "price": float(self.price or 0),
            "quantity": self.quantity,
            "status": self.status,
            "image_url": self.image_url,
        }
