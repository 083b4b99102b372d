# storefront/payment/routes.py
from flask import jsonify, request

from ..errors import ValidationError
from ..services import payments
from ..services.webhooks import handle_webhook_event
from ..utils.api import ok
from ..utils.decorators import current_context, login_required
from . import bp


def _order_id(data):
    raw = data.get("order_id") or data.get("orderId")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Valid order ID is required")


@bp.post("/create-intent")
@login_required
def create_intent():
    data = request.get_json(silent=True) or {}
    result = payments.create_payment_intent(current_context(), _order_id(data))
    return ok("Payment intent created", result)


@bp.post("/confirm")
@login_required
def confirm():
    data = request.get_json(silent=True) or {}
    intent_id = data.get("payment_intent_id") or data.get("paymentIntentId")
    paypal = data.get("payment_data") or data.get("paymentData")
    order, changed = payments.confirm_payment(current_context(), _order_id(data), intent_id, paypal)
    msg = "Payment confirmed" if changed else "Order already paid"
    return ok(msg, order.as_api())


@bp.post("/webhook")
def webhook():
    # raw body: the signature covers the exact bytes sent
    outcome = handle_webhook_event(request.get_data(), request.headers.get("Stripe-Signature"))
    return jsonify(outcome.as_api()), 200
