# storefront/services/notifications.py
"""Fire-and-forget customer notifications.

Called only after the business transaction has committed; a failure here is
logged and never reaches the caller.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..model import Notification

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = "order_confirmed"
PAYMENT_RECEIPT = "payment_receipt"
ORDER_CANCELLED = "order_cancelled"
ORDER_REFUNDED = "order_refunded"
RETURN_REJECTED = "return_rejected"

_MESSAGES = {
    ORDER_CONFIRMED: "Your order {code} has been placed. Total {total}.",
    PAYMENT_RECEIPT: "Payment received for order {code}. Total {total}.",
    ORDER_CANCELLED: "Your order {code} has been cancelled.",
    ORDER_REFUNDED: "Order {code} has been refunded.",
    RETURN_REJECTED: "Your return request for order {code} was rejected.",
}


def notify_order(kind: str, order) -> None:
    try:
        msg = _MESSAGES[kind].format(code=order.code, total=f"{order.total_price:.2f}")
        db.session.add(Notification(user_id=order.user_id, order_id=order.id, kind=kind, message=msg))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("notification failed kind=%s order=%s", kind, getattr(order, "id", None))
