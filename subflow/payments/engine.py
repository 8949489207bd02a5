"""
Payment intent engine (payment service side of the saga).

The gateway is simulated: a payment intent is persisted PENDING, settles after
a fixed delay, and the outcome is emitted to the subscription service shaped
like a provider webhook event. Settlement, once scheduled, always runs.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from subflow.errors import InvalidPaymentReferenceError, PlanNotFoundError, TransactionRolledBack, ValidationError
from subflow.extensions import db
from subflow.messaging import topics
from subflow.messaging.gateway import MessagingGateway
from subflow.models import GatewayPlan, Payment
from subflow.models.payment import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCEEDED
from subflow.observability import log_event
from subflow.services.transactions import saga_transaction
from subflow.utils.identifiers import (
    generate_event_id,
    generate_gateway_payment_id,
    generate_intent_id,
    generate_plan_id,
)
from subflow.utils.periods import utcnow

logger = logging.getLogger(__name__)


def build_webhook_event(payment: Payment) -> Dict[str, Any]:
    succeeded = payment.status == PAYMENT_SUCCEEDED
    event_type = topics.EVENT_PAYMENT_SUCCEEDED if succeeded else topics.EVENT_PAYMENT_FAILED
    return {
        "paymentReference": payment.gateway_payment_id,
        "eventType": event_type,
        "status": topics.DELIVERY_DELIVERED,
        "payload": {
            "id": generate_event_id(),
            "object": "event",
            "type": "payment_intent.succeeded" if succeeded else "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": payment.gateway_intent_id,
                    "amount": payment.amount,
                    "currency": (payment.currency or "").lower(),
                    "status": "succeeded" if succeeded else "failed",
                    "metadata": {
                        "refId": payment.gateway_payment_id,
                        "subscriptionId": payment.subscription_id,
                    },
                },
            },
            "created": int(utcnow().timestamp()),
        },
    }


class PaymentIntentEngine:
    def __init__(self, gateway: MessagingGateway, scheduler=None, *, delay: float = 3.0,
                 default_currency: str = "USD"):
        self.gateway = gateway
        self.scheduler = scheduler
        self.delay = delay
        self.default_currency = default_currency

    # ----- payments -----

    def _by_reference(self, reference: str) -> Optional[Payment]:
        return Payment.query.filter_by(gateway_payment_id=reference).one_or_none()

    def validate_payment_reference(self, reference: Optional[str]) -> bool:
        """True when no payment exists for `reference` yet (it may start a new intent)."""
        reference = (reference or "").strip()
        if not reference:
            return False
        return self._by_reference(reference) is None

    def create_payment_intent(self, *, subscription_id: Optional[str], user_id: Optional[str], amount: int,
                              currency: Optional[str], payment_reference: str, description: Optional[str] = None,
                              simulate_success: bool = True) -> Payment:
        reference = (payment_reference or "").strip()
        if not reference:
            raise InvalidPaymentReferenceError("Payment reference is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError("Amount must be a non-negative integer", context={"amount": amount})

        existing = self._by_reference(reference)
        if existing is not None:
            # Redelivered request; the first delivery already scheduled settlement
            log_event(logger, "payment_intent_duplicate", payment_reference=reference, payment_id=existing.id)
            return existing

        try:
            with saga_transaction("create_payment_intent") as session:
                payment = Payment(
                    subscription_id=subscription_id,
                    user_id=user_id,
                    amount=amount,
                    currency=(currency or self.default_currency).upper(),
                    status=PAYMENT_PENDING,
                    gateway_payment_id=reference,
                    gateway_intent_id=generate_intent_id(),
                    description=description,
                )
                session.add(payment)
        except TransactionRolledBack as exc:
            if isinstance(exc.__cause__, IntegrityError):
                existing = self._by_reference(reference)
                if existing is not None:
                    return existing
            raise

        log_event(logger, "payment_intent_created", payment_id=payment.id, payment_reference=reference,
                  subscription_id=subscription_id, amount=amount)
        self.scheduler.call_later(self.delay, self.settle_payment, payment.id, simulate_success)
        return payment

    def settle_payment(self, payment_id: str, succeeded: bool = True) -> Optional[Payment]:
        """Mark a PENDING payment SUCCEEDED/FAILED and emit the outcome. Settled payments are left alone."""
        payment = db.session.get(Payment, payment_id)
        if payment is None:
            log_event(logger, "payment_settle_missing", logging.WARNING, payment_id=payment_id)
            return None
        if payment.status != PAYMENT_PENDING:
            return payment

        with saga_transaction("settle_payment"):
            payment.status = PAYMENT_SUCCEEDED if succeeded else PAYMENT_FAILED
            payment.processed_at = utcnow()

        event = build_webhook_event(payment)
        self.gateway.emit(topics.SUBSCRIPTION_WEBHOOK, event)
        log_event(logger, "payment_settled", payment_id=payment.id, payment_reference=payment.gateway_payment_id,
                  status=payment.status, event_id=event["payload"]["id"])
        return payment

    # ----- subscriptions -----

    def update_subscription(self, *, subscription_id: str, gateway_plan_id: str, user_id: str) -> str:
        """
        Approve a plan change and reserve the payment id for its charge.

        No intent is started here. The caller records the PENDING billing row
        first and then emits CREATE_PAYMENT_INTENT with this id, so settlement
        can never overtake the record it has to match.
        """
        plan = GatewayPlan.query.filter_by(gateway_plan_id=gateway_plan_id).one_or_none()
        if plan is None:
            raise PlanNotFoundError("Unknown gateway plan", context={"gatewayPlanId": gateway_plan_id})
        if not plan.is_active:
            raise PlanNotFoundError("Gateway plan is inactive", context={"gatewayPlanId": gateway_plan_id})
        reference = generate_gateway_payment_id()
        log_event(logger, "plan_change_reserved", subscription_id=subscription_id, user_id=user_id,
                  gateway_plan_id=gateway_plan_id, payment_reference=reference)
        return reference

    def cancel_subscription(self, *, user_id: str) -> bool:
        log_event(logger, "gateway_subscription_cancelled", user_id=user_id)
        return True

    # ----- plans -----

    def _find_plan(self, gateway_plan_id: Optional[str] = None, sync_ref: Optional[str] = None) -> Optional[GatewayPlan]:
        if gateway_plan_id:
            plan = GatewayPlan.query.filter_by(gateway_plan_id=gateway_plan_id).one_or_none()
            if plan is not None:
                return plan
        if sync_ref:
            return GatewayPlan.query.filter_by(sync_ref=sync_ref).one_or_none()
        return None

    def create_plan(self, fields: Dict[str, Any]) -> str:
        sync_ref = fields.get("syncRef")
        existing = self._find_plan(sync_ref=sync_ref)
        if existing is not None:
            return existing.gateway_plan_id

        with saga_transaction("gateway_create_plan") as session:
            plan = GatewayPlan(
                gateway_plan_id=generate_plan_id(),
                sync_ref=sync_ref,
                name=fields["name"],
                description=fields.get("description"),
                price=fields["price"],
                currency=(fields.get("currency") or self.default_currency).upper(),
                billing_interval=fields["billingInterval"],
                is_active=fields.get("isActive", True),
            )
            session.add(plan)
        log_event(logger, "gateway_plan_created", gateway_plan_id=plan.gateway_plan_id, sync_ref=sync_ref)
        return plan.gateway_plan_id

    def update_plan(self, fields: Dict[str, Any]) -> bool:
        plan = self._find_plan(fields.get("gatewayPlanId"), fields.get("syncRef"))
        if plan is None:
            return False
        with saga_transaction("gateway_update_plan"):
            for key, column in (("name", "name"), ("description", "description"), ("price", "price"),
                                ("currency", "currency"), ("billingInterval", "billing_interval"),
                                ("isActive", "is_active")):
                if key in fields:
                    setattr(plan, column, fields[key])
        return True

    def delete_plan(self, *, gateway_plan_id: Optional[str] = None, sync_ref: Optional[str] = None) -> bool:
        plan = self._find_plan(gateway_plan_id, sync_ref)
        if plan is None:
            return True
        with saga_transaction("gateway_delete_plan") as session:
            session.delete(plan)
        log_event(logger, "gateway_plan_deleted", gateway_plan_id=gateway_plan_id, sync_ref=sync_ref)
        return True
