from sqlalchemy import func, text, CheckConstraint, Index
from subflow.extensions import db
from subflow.utils.identifiers import new_id

BILLING_PENDING = "PENDING"
BILLING_PAID = "PAID"
BILLING_FAILED = "FAILED"
BILLING_REFUNDED = "REFUNDED"
BILLING_CHOICES = (BILLING_PENDING, BILLING_PAID, BILLING_FAILED, BILLING_REFUNDED)

_PENDING_SQL = f"status = '{BILLING_PENDING}'"


class BillingHistoryRecord(db.Model):
    __tablename__ = "billing_history"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    subscription_id = db.Column(
        db.String(36),
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(16), nullable=False, index=True, server_default=text(f"'{BILLING_PENDING}'"))

    # Caller-supplied payment reference (create) or gateway payment id (plan migration)
    gateway_payment_id = db.Column(db.String(128), nullable=True, index=True)

    billing_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    subscription = db.relationship("Subscription", back_populates="billing_records")

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ",".join(f"'{s}'" for s in BILLING_CHOICES),
            name="ck_billing_history_status_valid",
        ),
        # The reconciliation anchor: one outstanding payment attempt per subscription
        Index(
            "uq_billing_history_one_pending",
            "subscription_id",
            unique=True,
            sqlite_where=text(_PENDING_SQL),
            postgresql_where=text(_PENDING_SQL),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionId": self.subscription_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "gatewayPaymentId": self.gateway_payment_id,
            "billingDate": self.billing_date.isoformat() if self.billing_date else None,
            "description": self.description,
        }

    def __repr__(self) -> str:
        return f"<BillingHistoryRecord id={self.id!r} subscription_id={self.subscription_id!r} status={self.status!r} amount={self.amount}>"
