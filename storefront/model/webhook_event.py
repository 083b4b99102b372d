# storefront/model/webhook_event.py
from ..extensions import db
from ..utils.dates import utcnow


class ProcessedWebhookEvent(db.Model):
    """Ledger of processor events whose side effects have been committed."""

    __tablename__ = "processed_webhook_event"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False)
    processed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
