"""
Subscription state machine (subscription service side of the saga).

Remote calls happen outside local transactions wherever the flow allows it:
validation and plan migration are asked *before* anything is written, and the
payment intent is emitted only *after* the commit. A failure before commit
leaves no rows behind.
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from subflow.errors import (
    ConflictError,
    InvalidPaymentReferenceError,
    InvalidPlanError,
    InvalidTransitionError,
    InvalidUserError,
    PaymentGatewayError,
    PlanNotReplicatedError,
    SamePlanError,
    SubscriptionNotFoundError,
)
from subflow.extensions import db
from subflow.models import BillingHistoryRecord, Plan, Subscription, User
from subflow.models.billing_history import BILLING_PENDING
from subflow.models.subscription import (
    CURRENT_STATUSES,
    OPEN_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_TRIALING,
)
from subflow.observability import log_event
from subflow.services.payment_client import PaymentServiceClient
from subflow.services.transactions import saga_transaction
from subflow.utils.periods import compute_period, trial_end, utcnow

logger = logging.getLogger(__name__)


def apply_transition(subscription: Subscription, target: str) -> bool:
    """Move to `target` if the transition table allows it. Same-state is a no-op (False)."""
    if subscription.status == target:
        return False
    if not subscription.can_transition(target):
        raise InvalidTransitionError(subscription.status, target)
    subscription.status = target
    return True


class SubscriptionStateMachine:
    def __init__(self, payments: PaymentServiceClient, *, trials_enabled: bool = False):
        self.payments = payments
        self.trials_enabled = trials_enabled

    # ----- lookups -----

    def _require_user(self, user_id: str) -> User:
        user_id = (user_id or "").strip()
        user = db.session.get(User, user_id) if user_id else None
        if user is None or not user.is_active:
            raise InvalidUserError("Unknown or inactive user", context={"userId": user_id})
        return user

    def _require_plan(self, plan_id: str) -> Plan:
        plan = db.session.get(Plan, plan_id) if plan_id else None
        if plan is None or not plan.is_active:
            raise InvalidPlanError("Plan does not exist or is inactive", context={"planId": plan_id})
        return plan

    def _open_subscription(self, user_id: str) -> Optional[Subscription]:
        return (
            Subscription.query
            .filter(Subscription.user_id == user_id, Subscription.status.in_(OPEN_STATUSES))
            .first()
        )

    def _current_subscription(self, user_id: str) -> Subscription:
        sub = self.get_active_subscription(user_id)
        if sub is None:
            raise SubscriptionNotFoundError("No active subscription", context={"userId": user_id})
        return sub

    def _insert(self, session, subscription: Subscription) -> None:
        session.add(subscription)
        try:
            session.flush()
        except IntegrityError:
            # Lost the race against a concurrent create for the same user
            raise ConflictError(
                "User already has an open subscription",
                context={"userId": subscription.user_id},
            ) from None

    def _start_charge(self, sub: Subscription, plan: Plan, payment_reference: str, description: str) -> None:
        # Runs after the commit so settlement always finds the PENDING record
        try:
            self.payments.create_payment_intent(
                subscription_id=sub.id,
                user_id=sub.user_id,
                amount=plan.price,
                currency=plan.currency,
                payment_reference=payment_reference,
                description=description,
            )
        except Exception as exc:
            # Committed already; the record stays PENDING until an outcome arrives
            log_event(logger, "payment_intent_emit_failed", logging.ERROR,
                      subscription_id=sub.id, payment_reference=payment_reference,
                      error=type(exc).__name__, detail=str(exc))

    # ----- sagas -----

    def create_subscription(self, user_id: str, plan_id: str, payment_reference: str) -> Subscription:
        user = self._require_user(user_id)
        if self._open_subscription(user.id) is not None:
            raise ConflictError("User already has an open subscription", context={"userId": user.id})
        plan = self._require_plan(plan_id)

        payment_reference = (payment_reference or "").strip()
        if not payment_reference:
            raise InvalidPaymentReferenceError("Payment reference is required")
        if not self.payments.validate_payment_reference(payment_reference):
            raise InvalidPaymentReferenceError(
                "Payment reference already used",
                context={"paymentReference": payment_reference},
            )

        start, end = compute_period(plan.billing_interval, utcnow())
        with saga_transaction("create_subscription") as session:
            sub = Subscription(
                user_id=user.id,
                plan_id=plan.id,
                status=STATUS_PENDING,
                current_period_start=start,
                current_period_end=end,
                trial_end=trial_end(start, plan.trial_days) if self.trials_enabled else None,
            )
            self._insert(session, sub)
            session.add(BillingHistoryRecord(
                subscription_id=sub.id,
                amount=plan.price,
                currency=plan.currency,
                status=BILLING_PENDING,
                gateway_payment_id=payment_reference,
                billing_date=start,
                description=f"{plan.name} subscription",
            ))

        log_event(logger, "subscription_created", subscription_id=sub.id, user_id=user.id,
                  plan_id=plan.id, payment_reference=payment_reference)

        self._start_charge(sub, plan, payment_reference, f"{plan.name} subscription")
        return sub

    def update_subscription(self, user_id: str, new_plan_id: str) -> Subscription:
        current = self._current_subscription(user_id)
        if current.plan_id == new_plan_id:
            raise SamePlanError("Already subscribed to this plan", context={"planId": new_plan_id})
        plan = self._require_plan(new_plan_id)
        if not plan.gateway_plan_id:
            raise PlanNotReplicatedError("Plan is not available for billing yet", context={"planId": plan.id})

        gateway_payment_id = self.payments.update_subscription(
            subscription_id=current.id,
            gateway_plan_id=plan.gateway_plan_id,
            user_id=current.user_id,
        )
        if not gateway_payment_id:
            raise PaymentGatewayError("Payment service did not return a payment id", context={"planId": plan.id})

        now = utcnow()
        old_id = current.id
        with saga_transaction("update_subscription") as session:
            apply_transition(current, STATUS_CANCELLED)
            current.cancelled_at = now
            # The open-subscription index must see the old row closed first
            session.flush()

            start, end = compute_period(plan.billing_interval, now)
            new_sub = Subscription(
                user_id=current.user_id,
                plan_id=plan.id,
                status=STATUS_ACTIVE,
                current_period_start=start,
                current_period_end=end,
            )
            self._insert(session, new_sub)
            session.add(BillingHistoryRecord(
                subscription_id=new_sub.id,
                amount=plan.price,
                currency=plan.currency,
                status=BILLING_PENDING,
                gateway_payment_id=gateway_payment_id,
                billing_date=start,
                description=f"Plan change to {plan.name}",
            ))

        log_event(logger, "subscription_plan_changed", user_id=new_sub.user_id, old_subscription_id=old_id,
                  subscription_id=new_sub.id, plan_id=plan.id, gateway_payment_id=gateway_payment_id)
        self._start_charge(new_sub, plan, gateway_payment_id, f"Plan change to {plan.name}")
        return new_sub

    def cancel_subscription(self, user_id: str) -> Subscription:
        current = self._current_subscription(user_id)

        # Best effort: the local cancel must not depend on the payment service
        try:
            if not self.payments.cancel_subscription(user_id=current.user_id):
                log_event(logger, "remote_cancel_not_acknowledged", logging.WARNING, subscription_id=current.id)
        except Exception as exc:
            log_event(logger, "remote_cancel_failed", logging.WARNING,
                      subscription_id=current.id, error=type(exc).__name__, detail=str(exc))

        with saga_transaction("cancel_subscription"):
            apply_transition(current, STATUS_CANCELLED)
            current.cancelled_at = utcnow()

        log_event(logger, "subscription_cancelled", subscription_id=current.id, user_id=current.user_id)
        return current

    def expire_trials(self, now=None) -> int:
        """Promote TRIALING subscriptions whose trial has ended to ACTIVE. Returns how many moved."""
        now = now or utcnow()
        due = (
            Subscription.query
            .filter(Subscription.status == STATUS_TRIALING, Subscription.trial_end <= now)
            .all()
        )
        if not due:
            return 0
        with saga_transaction("expire_trials"):
            for sub in due:
                apply_transition(sub, STATUS_ACTIVE)
        log_event(logger, "trials_expired", count=len(due))
        return len(due)

    # ----- reads -----

    def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        return (
            Subscription.query
            .filter(Subscription.user_id == user_id, Subscription.status.in_(CURRENT_STATUSES))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def list_subscriptions(self, user_id: str) -> List[Subscription]:
        return (
            Subscription.query
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def list_billing_history(self, user_id: str, subscription_id: Optional[str] = None) -> List[BillingHistoryRecord]:
        q = (
            BillingHistoryRecord.query
            .join(Subscription, BillingHistoryRecord.subscription_id == Subscription.id)
            .filter(Subscription.user_id == user_id)
        )
        if subscription_id:
            owned = Subscription.query.filter_by(id=subscription_id, user_id=user_id).first()
            if owned is None:
                raise SubscriptionNotFoundError("Subscription not found", context={"subscriptionId": subscription_id})
            q = q.filter(BillingHistoryRecord.subscription_id == subscription_id)
        return q.order_by(BillingHistoryRecord.billing_date.desc()).all()
