"""
Plan registry sync: local plan rows and their replica in the payment service.

Each mutation is recorded as a PlanSyncIntent committed before the remote call,
then the local change and the remote request share one local transaction. If
the remote side succeeded but the local commit did not, a compensating remote
delete runs; if even that fails, the STARTED intent is left for the sweeper.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from subflow.errors import (
    DuplicateNameError,
    HasActiveSubscriptionsError,
    PaymentGatewayError,
    PlanNotFoundError,
    SubflowError,
    ValidationError,
)
from subflow.extensions import db
from subflow.models import Plan, PlanSyncIntent, Subscription
from subflow.models.plan_sync_intent import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_UPDATE,
    INTENT_COMPENSATED,
    INTENT_COMPLETED,
    INTENT_FAILED,
    INTENT_STARTED,
)
from subflow.models.subscription import OPEN_STATUSES
from subflow.observability import log_event
from subflow.services.payment_client import PaymentServiceClient
from subflow.services.transactions import saga_transaction
from subflow.utils.periods import INTERVAL_CHOICES, utcnow

logger = logging.getLogger(__name__)

# API field -> column
_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "price": "price",
    "currency": "currency",
    "billingInterval": "billing_interval",
    "trialDays": "trial_days",
    "features": "features",
    "isActive": "is_active",
}
_REQUIRED = ("name", "price", "billing_interval")


def clean_plan_fields(data: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    """Map camelCase input to column values and validate them. Raises ValidationError."""
    data = data or {}
    out: Dict[str, Any] = {}
    for key, column in _FIELD_MAP.items():
        if key in data:
            out[column] = data[key]
        elif column in data:
            out[column] = data[column]

    if not partial:
        missing = [c for c in _REQUIRED if out.get(c) in (None, "")]
        if missing:
            raise ValidationError("Missing required plan fields", context={"missing": missing})

    if "name" in out:
        name = str(out["name"] or "").strip()
        if not name or len(name) > 120:
            raise ValidationError("Plan name must be 1-120 characters")
        out["name"] = name
    if "price" in out:
        price = out["price"]
        if isinstance(price, bool) or not isinstance(price, int) or price < 0:
            raise ValidationError("Price must be a non-negative integer amount in minor units")
    if "currency" in out:
        currency = str(out["currency"] or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code")
        out["currency"] = currency
    elif not partial:
        out["currency"] = current_app.config.get("DEFAULT_CURRENCY", "USD")
    if "billing_interval" in out:
        interval = str(out["billing_interval"] or "").strip().upper()
        if interval not in INTERVAL_CHOICES:
            raise ValidationError("Unknown billing interval", context={"allowed": list(INTERVAL_CHOICES)})
        out["billing_interval"] = interval
    if "trial_days" in out:
        days = out["trial_days"]
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            raise ValidationError("trialDays must be a non-negative integer")
    if "features" in out:
        features = out["features"]
        if features is None:
            out["features"] = []
        elif not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            raise ValidationError("features must be a list of strings")
    if "is_active" in out:
        out["is_active"] = bool(out["is_active"])
    return out


def _remote_fields(plan: Plan) -> Dict[str, Any]:
    return {
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "billingInterval": plan.billing_interval,
        "isActive": plan.is_active,
    }


class PlanRegistrySync:
    def __init__(self, payments: PaymentServiceClient):
        self.payments = payments

    # ----- intents -----

    def _start_intent(self, action: str, plan_id: Optional[str], plan_name: Optional[str],
                      gateway_plan_id: Optional[str] = None) -> PlanSyncIntent:
        with saga_transaction("record_plan_sync_intent") as session:
            intent = PlanSyncIntent(action=action, plan_id=plan_id, plan_name=plan_name,
                                    gateway_plan_id=gateway_plan_id, state=INTENT_STARTED)
            session.add(intent)
        return intent

    def _finish_intent(self, intent_id: str, state: str, error: Optional[str] = None, **fields) -> None:
        try:
            with saga_transaction("finish_plan_sync_intent") as session:
                intent = session.get(PlanSyncIntent, intent_id)
                if intent is None:
                    return
                intent.state = state
                intent.error = (error or "")[:255] or None
                for key, value in fields.items():
                    setattr(intent, key, value)
        except SubflowError:
            # Intent stays STARTED; the sweeper will reconcile it
            logger.exception("plan_sync_intent_update_failed intent_id=%s", intent_id)

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        q = Plan.query.filter(Plan.name == name)
        if exclude_id:
            q = q.filter(Plan.id != exclude_id)
        return db.session.query(q.exists()).scalar()

    # ----- operations -----

    def create_plan(self, data: Dict[str, Any]) -> Plan:
        fields = clean_plan_fields(data)
        if self._name_taken(fields["name"]):
            raise DuplicateNameError("A plan with this name already exists", context={"name": fields["name"]})

        intent = self._start_intent(ACTION_CREATE, None, fields["name"])
        intent_id, sync_ref = intent.id, intent.sync_ref
        gateway_plan_id = None
        try:
            with saga_transaction("create_plan") as session:
                plan = Plan(**fields)
                session.add(plan)
                try:
                    session.flush()
                except IntegrityError:
                    raise DuplicateNameError(
                        "A plan with this name already exists", context={"name": fields["name"]}
                    ) from None

                gateway_plan_id = self.payments.create_plan({**_remote_fields(plan), "syncRef": sync_ref})
                if not gateway_plan_id:
                    raise PaymentGatewayError("Payment service did not return a plan id", context={"name": plan.name})
                plan.gateway_plan_id = gateway_plan_id

                tracked = session.get(PlanSyncIntent, intent_id)
                tracked.plan_id = plan.id
                tracked.gateway_plan_id = gateway_plan_id
                tracked.state = INTENT_COMPLETED
        except SubflowError as exc:
            if gateway_plan_id:
                self._compensate_create(intent_id, gateway_plan_id, sync_ref, exc)
            else:
                self._finish_intent(intent_id, INTENT_FAILED, error=f"{exc.error_code}: {exc.message}")
            raise

        log_event(logger, "plan_created", plan_id=plan.id, name=plan.name, gateway_plan_id=gateway_plan_id)
        return plan

    def _compensate_create(self, intent_id: str, gateway_plan_id: str, sync_ref: str, cause: SubflowError) -> None:
        log_event(logger, "plan_create_compensating", logging.WARNING,
                  intent_id=intent_id, gateway_plan_id=gateway_plan_id, cause=cause.error_code)
        try:
            self.payments.delete_plan(gateway_plan_id=gateway_plan_id, sync_ref=sync_ref)
        except SubflowError as exc:
            log_event(logger, "plan_compensation_failed", logging.ERROR,
                      intent_id=intent_id, gateway_plan_id=gateway_plan_id, error=exc.error_code)
            self._finish_intent(intent_id, INTENT_STARTED, error=f"compensation_failed: {exc.message}",
                                gateway_plan_id=gateway_plan_id)
            return
        self._finish_intent(intent_id, INTENT_COMPENSATED, error=f"{cause.error_code}: {cause.message}",
                            gateway_plan_id=gateway_plan_id)

    def update_plan(self, plan_id: str, changes: Dict[str, Any]) -> Plan:
        plan = db.session.get(Plan, plan_id) if plan_id else None
        if plan is None:
            raise PlanNotFoundError("Plan not found", context={"planId": plan_id})
        fields = clean_plan_fields(changes, partial=True)
        if not fields:
            raise ValidationError("No updatable plan fields supplied")
        if "name" in fields and self._name_taken(fields["name"], exclude_id=plan.id):
            raise DuplicateNameError("A plan with this name already exists", context={"name": fields["name"]})

        intent = self._start_intent(ACTION_UPDATE, plan.id, plan.name, plan.gateway_plan_id)
        intent_id = intent.id
        try:
            with saga_transaction("update_plan") as session:
                for column, value in fields.items():
                    setattr(plan, column, value)
                try:
                    session.flush()
                except IntegrityError:
                    raise DuplicateNameError("A plan with this name already exists", context={"name": plan.name}) from None

                if plan.gateway_plan_id:
                    ok = self.payments.update_plan({**_remote_fields(plan), "gatewayPlanId": plan.gateway_plan_id})
                    if not ok:
                        raise PaymentGatewayError("Payment service rejected the plan update", context={"planId": plan.id})
                else:
                    log_event(logger, "plan_update_local_only", logging.WARNING, plan_id=plan.id)
                session.get(PlanSyncIntent, intent_id).state = INTENT_COMPLETED
        except SubflowError as exc:
            self._finish_intent(intent_id, INTENT_FAILED, error=f"{exc.error_code}: {exc.message}")
            raise

        log_event(logger, "plan_updated", plan_id=plan.id, fields=sorted(fields))
        return plan

    def _open_subscription_count(self, plan_id: str) -> int:
        return (
            Subscription.query
            .filter(Subscription.plan_id == plan_id, Subscription.status.in_(OPEN_STATUSES))
            .count()
        )

    def delete_plan(self, plan_id: str) -> None:
        plan = db.session.get(Plan, plan_id) if plan_id else None
        if plan is None:
            raise PlanNotFoundError("Plan not found", context={"planId": plan_id})
        if self._open_subscription_count(plan.id):
            raise HasActiveSubscriptionsError("Plan has open subscriptions", context={"planId": plan.id})

        intent = self._start_intent(ACTION_DELETE, plan.id, plan.name, plan.gateway_plan_id)
        intent_id = intent.id
        gateway_plan_id = plan.gateway_plan_id
        try:
            with saga_transaction("delete_plan") as session:
                # Re-check inside the transaction; a create may have raced us
                if self._open_subscription_count(plan.id):
                    raise HasActiveSubscriptionsError("Plan has open subscriptions", context={"planId": plan.id})
                (
                    Subscription.query
                    .filter(Subscription.plan_id == plan.id)
                    .update({Subscription.plan_id: None}, synchronize_session=False)
                )
                session.delete(plan)
                session.flush()

                if gateway_plan_id:
                    if not self.payments.delete_plan(gateway_plan_id=gateway_plan_id):
                        raise PaymentGatewayError("Payment service rejected the plan delete", context={"planId": plan_id})
                session.get(PlanSyncIntent, intent_id).state = INTENT_COMPLETED
        except SubflowError as exc:
            self._finish_intent(intent_id, INTENT_FAILED, error=f"{exc.error_code}: {exc.message}")
            raise

        log_event(logger, "plan_deleted", plan_id=plan_id, gateway_plan_id=gateway_plan_id)

    def sweep_plan_sync_intents(self, older_than_seconds: int = 300) -> Dict[str, int]:
        """
        Reconcile STARTED intents older than the threshold.

        A CREATE whose plan committed with a gateway id is COMPLETED; otherwise
        the remote replica (if any) is deleted by sync_ref and the intent is
        COMPENSATED. Stale UPDATE/DELETE intents are marked FAILED for review.
        """
        cutoff = utcnow() - timedelta(seconds=int(older_than_seconds))
        stale = (
            PlanSyncIntent.query
            .filter(PlanSyncIntent.state == INTENT_STARTED, PlanSyncIntent.created_at < cutoff)
            .order_by(PlanSyncIntent.created_at)
            .all()
        )
        counts = {"completed": 0, "compensated": 0, "failed": 0, "pending": 0}
        for intent in stale:
            intent_id = intent.id
            if intent.action != ACTION_CREATE:
                self._finish_intent(intent_id, INTENT_FAILED, error="stale: abandoned before completion")
                counts["failed"] += 1
                continue

            plan = db.session.get(Plan, intent.plan_id) if intent.plan_id else None
            if plan is None and intent.plan_name:
                plan = Plan.query.filter_by(name=intent.plan_name).first()
            if plan is not None and plan.gateway_plan_id:
                self._finish_intent(intent_id, INTENT_COMPLETED, plan_id=plan.id, gateway_plan_id=plan.gateway_plan_id)
                counts["completed"] += 1
                continue

            try:
                self.payments.delete_plan(gateway_plan_id=intent.gateway_plan_id, sync_ref=intent.sync_ref)
            except SubflowError as exc:
                log_event(logger, "plan_sweep_compensation_failed", logging.WARNING,
                          intent_id=intent_id, error=exc.error_code)
                counts["pending"] += 1
                continue
            self._finish_intent(intent_id, INTENT_COMPENSATED, error="stale: remote replica removed")
            counts["compensated"] += 1

        if stale:
            log_event(logger, "plan_sync_intents_swept", **counts)
        return counts
