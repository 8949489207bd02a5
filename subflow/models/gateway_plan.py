from sqlalchemy import func, true
from subflow.extensions import db
from subflow.utils.identifiers import new_id

class GatewayPlan(db.Model):
    """Remote-side plan record kept by the (simulated) payment gateway."""

    __bind_key__ = "payments"
    __tablename__ = "gateway_plans"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    gateway_plan_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    # Idempotency key from the subscription service's sync intent
    sync_ref = db.Column(db.String(64), nullable=True, unique=True, index=True)

    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    price = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    billing_interval = db.Column(db.String(16), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<GatewayPlan gateway_plan_id={self.gateway_plan_id!r} name={self.name!r}>"
