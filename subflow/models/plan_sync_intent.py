from sqlalchemy import func, CheckConstraint
from subflow.extensions import db
from subflow.utils.identifiers import new_id
from subflow.utils.periods import utcnow

ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_DELETE = "DELETE"

INTENT_STARTED = "STARTED"
INTENT_COMPLETED = "COMPLETED"
INTENT_FAILED = "FAILED"
INTENT_COMPENSATED = "COMPENSATED"
INTENT_STATES = (INTENT_STARTED, INTENT_COMPLETED, INTENT_FAILED, INTENT_COMPENSATED)


class PlanSyncIntent(db.Model):
    """
    Durable marker for one plan replication attempt.

    Committed *before* the remote call, so a crash between the remote side
    effect and the local commit leaves a STARTED row the sweeper can compensate.
    """

    __tablename__ = "plan_sync_intents"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    action = db.Column(db.String(16), nullable=False)
    plan_id = db.Column(db.String(36), nullable=True, index=True)
    plan_name = db.Column(db.String(120), nullable=True)
    # Idempotency key handed to the payment service
    sync_ref = db.Column(db.String(64), nullable=False, unique=True, default=new_id)
    gateway_plan_id = db.Column(db.String(64), nullable=True)

    state = db.Column(db.String(16), nullable=False, index=True, default=INTENT_STARTED)
    error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "state IN (%s)" % ",".join(f"'{s}'" for s in INTENT_STATES),
            name="ck_plan_sync_intents_state_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<PlanSyncIntent id={self.id!r} action={self.action} state={self.state} plan={self.plan_name!r}>"
