from sqlalchemy import func, text, true, CheckConstraint
from subflow.extensions import db
from subflow.utils.identifiers import new_id
from subflow.utils.periods import INTERVAL_CHOICES

class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False, unique=True, index=True)
    description = db.Column(db.String(500), nullable=True)

    # integer minor units (2999 == 29.99)
    price = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default=text("'USD'"))
    billing_interval = db.Column(db.String(16), nullable=False)
    trial_days = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    features = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    # Set only after the payment service has replicated the plan
    gateway_plan_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint(
            "billing_interval IN (%s)" % ",".join(f"'{i}'" for i in INTERVAL_CHOICES),
            name="ck_plans_billing_interval_valid",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "billingInterval": self.billing_interval,
            "trialDays": self.trial_days,
            "features": list(self.features or []),
            "isActive": self.is_active,
            "gatewayPlanId": self.gateway_plan_id,
        }

    def __repr__(self) -> str:
        return f"<Plan id={self.id!r} name={self.name!r} price={self.price} interval={self.billing_interval}>"
