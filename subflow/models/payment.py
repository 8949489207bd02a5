from sqlalchemy import func, text, CheckConstraint
from subflow.extensions import db
from subflow.utils.identifiers import new_id

PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCEEDED = "SUCCEEDED"
PAYMENT_FAILED = "FAILED"
PAYMENT_CHOICES = (PAYMENT_PENDING, PAYMENT_SUCCEEDED, PAYMENT_FAILED)


class Payment(db.Model):
    """Payment intent as stored by the payment service (its own database)."""

    __bind_key__ = "payments"
    __tablename__ = "payments"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    # No FKs: these ids live in the subscription service's store
    subscription_id = db.Column(db.String(36), nullable=True, index=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default=text("'USD'"))
    status = db.Column(db.String(16), nullable=False, index=True, server_default=text(f"'{PAYMENT_PENDING}'"))

    # The caller-supplied payment reference; one payment per reference
    gateway_payment_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    gateway_intent_id = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ",".join(f"'{s}'" for s in PAYMENT_CHOICES),
            name="ck_payments_status_valid",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionId": self.subscription_id,
            "userId": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "gatewayPaymentId": self.gateway_payment_id,
        }

    def __repr__(self) -> str:
        return f"<Payment id={self.id!r} ref={self.gateway_payment_id!r} status={self.status!r}>"
