from sqlalchemy import text
from subflow.extensions import db
from subflow.utils.identifiers import new_id
from subflow.utils.periods import utcnow

class WebhookEvent(db.Model):
    """Append-only audit of every reconciliation attempt (hit, miss, or failure)."""

    __tablename__ = "webhook_events"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    # Gateway event id from the payload (evt_...); repeated on redelivery
    event_id = db.Column(db.String(255), nullable=True, index=True)
    subscription_id = db.Column(db.String(36), nullable=True, index=True)
    payment_reference = db.Column(db.String(128), nullable=True, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    processed = db.Column(db.Boolean, nullable=False, default=False)
    retry_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<WebhookEvent id={self.id!r} type={self.event_type!r} processed={self.processed} notes={self.notes!r}>"
