from sqlalchemy import func, text, CheckConstraint, Index
from subflow.extensions import db
from subflow.utils.identifiers import new_id

# Keep simple text+CHECK for evolvable statuses (no DB enum migration pain)
STATUS_PENDING = "PENDING"
STATUS_ACTIVE = "ACTIVE"
STATUS_TRIALING = "TRIALING"
STATUS_PAST_DUE = "PAST_DUE"
STATUS_CANCELLED = "CANCELLED"
STATUS_CHOICES = (STATUS_PENDING, STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE, STATUS_CANCELLED)

# A user may hold at most one of these at a time
OPEN_STATUSES = (STATUS_PENDING, STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE)
# What update/cancel operate on
CURRENT_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE, STATUS_CANCELLED},
    STATUS_TRIALING: {STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED},
    STATUS_ACTIVE: {STATUS_PAST_DUE, STATUS_CANCELLED},
    STATUS_PAST_DUE: {STATUS_ACTIVE, STATUS_CANCELLED},
    STATUS_CANCELLED: set(),
}

_OPEN_SQL = "status IN (%s)" % ",".join(f"'{s}'" for s in OPEN_STATUSES)


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    # Nullable so a plan can be deleted once only terminal subscriptions point at it
    plan_id = db.Column(db.String(36), db.ForeignKey("plans.id", ondelete="SET NULL"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, index=True, server_default=text(f"'{STATUS_PENDING}'"))
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    plan = db.relationship("Plan", lazy="joined")
    billing_records = db.relationship(
        "BillingHistoryRecord",
        back_populates="subscription",
        order_by="BillingHistoryRecord.billing_date",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN (%s)" % ",".join(f"'{s}'" for s in STATUS_CHOICES),
            name="ck_subscriptions_status_valid",
        ),
        # Closes the check-then-insert race on concurrent creates for one user
        Index(
            "uq_subscriptions_user_open",
            "user_id",
            unique=True,
            sqlite_where=text(_OPEN_SQL),
            postgresql_where=text(_OPEN_SQL),
        ),
    )

    def can_transition(self, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, set())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "planId": self.plan_id,
            "status": self.status,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "trialEnd": self.trial_end.isoformat() if self.trial_end else None,
            "cancelledAt": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    def __repr__(self) -> str:
        return f"<Subscription id={self.id!r} user_id={self.user_id!r} status={self.status!r} plan_id={self.plan_id!r}>"
