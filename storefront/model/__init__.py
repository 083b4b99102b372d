# ------ storefront/model/__init__.py ------

from .user import User
from .product import Product
from .cart import Cart, CartItem
from .types import ItemKind, ItemRef
from .coupon import Coupon
from .notification import Notification
from .order import Order, OrderItem
from .webhook_event import ProcessedWebhookEvent

__all__ = [
    "Product",
    "User",
    "Cart",
    "CartItem",
    "Coupon",
    "ItemKind",
    "ItemRef",
    "Notification",
    "Order",
    "OrderItem",
    "ProcessedWebhookEvent",
]
