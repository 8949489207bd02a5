"""
Webhook reconciler: applies payment outcomes to subscriptions and billing.

The PENDING billing record is the idempotency anchor. Once an outcome has
been applied the record is no longer PENDING, so a redelivered event finds
nothing to do and is audited as a miss. The cache only short-circuits
duplicates cheaply; correctness never depends on it.

A subscription cancelled while its charge was in flight still gets its
billing record settled; the subscription itself stays CANCELLED.
"""

import logging
from typing import Any, Dict, Optional

from subflow.cache import Cache, webhook_seen_key
from subflow.errors import GatewayError, ReconciliationMiss, SubflowError, TransactionRolledBack
from subflow.messaging import topics
from subflow.messaging.envelope import Message
from subflow.messaging.gateway import MessagingGateway
from subflow.models import BillingHistoryRecord, WebhookEvent
from subflow.models.billing_history import BILLING_FAILED, BILLING_PAID, BILLING_PENDING
from subflow.models.subscription import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_PAST_DUE, STATUS_TRIALING
from subflow.observability import log_event
from subflow.services.subscriptions import apply_transition
from subflow.services.transactions import saga_transaction

logger = logging.getLogger(__name__)

RETRY_HEADER = "retryCount"

NOTE_MISS = "reconciliation_miss"
NOTE_DUPLICATE = "duplicate_event"
NOTE_INVALID = "invalid_payload"
NOTE_CANCELLED = "subscription_cancelled"

# Failures worth another attempt; domain errors would fail the same way again
_RETRYABLE = (TransactionRolledBack, GatewayError)


class WebhookReconciler:
    def __init__(self, gateway: MessagingGateway, cache: Cache, *, scheduler=None,
                 trials_enabled: bool = False, max_retries: int = 3,
                 retry_backoff: float = 2.0, dedupe_ttl: int = 86400):
        self.gateway = gateway
        self.cache = cache
        self.scheduler = scheduler
        self.trials_enabled = trials_enabled
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.dedupe_ttl = dedupe_ttl

    def handle_message(self, message: Message) -> Optional[WebhookEvent]:
        retry_count = int((message.headers or {}).get(RETRY_HEADER, 0) or 0)
        return self.handle_subscription_webhook(message.payload or {}, retry_count=retry_count)

    def handle_subscription_webhook(self, event: Dict[str, Any], retry_count: int = 0) -> Optional[WebhookEvent]:
        """
        Apply one payment outcome. Never raises: misses are audited, failures
        are audited and retried with backoff until the retry budget is spent.
        Returns the audit row written for this attempt, if any.
        """
        event = event or {}
        reference = event.get("paymentReference")
        event_type = event.get("eventType")
        event_id = (event.get("payload") or {}).get("id")

        if not reference or not event_type:
            log_event(logger, "webhook_invalid_payload", logging.WARNING, event_id=event_id)
            return self._audit(event, notes=NOTE_INVALID, retry_count=retry_count)

        if event_id and self.cache.get(webhook_seen_key(event_id)):
            log_event(logger, "webhook_duplicate_skipped", event_id=event_id, payment_reference=reference)
            return self._audit(event, notes=NOTE_DUPLICATE, retry_count=retry_count)

        try:
            with saga_transaction("reconcile_webhook") as session:
                audit = self._apply(session, event, reference, event_type, event_id, retry_count)
        except ReconciliationMiss:
            log_event(logger, "reconciliation_miss", logging.WARNING,
                      payment_reference=reference, event_type=event_type, event_id=event_id)
            return self._audit(event, notes=NOTE_MISS, retry_count=retry_count)
        except SubflowError as exc:
            log_event(logger, "webhook_handler_failed", logging.ERROR,
                      payment_reference=reference, event_type=event_type,
                      error=exc.error_code, retry_count=retry_count)
            failed = self._audit(event, notes=f"handler_error:{exc.error_code}", retry_count=retry_count)
            if isinstance(exc, _RETRYABLE):
                self._schedule_retry(event, retry_count)
            return failed

        if event_id:
            self.cache.set(webhook_seen_key(event_id), True, ttl=self.dedupe_ttl)
        log_event(logger, "webhook_reconciled", payment_reference=reference, event_type=event_type,
                  subscription_id=audit.subscription_id, event_id=event_id)
        return audit

    def _apply(self, session, event, reference, event_type, event_id, retry_count) -> WebhookEvent:
        record = (
            session.query(BillingHistoryRecord)
            .filter(
                BillingHistoryRecord.gateway_payment_id == reference,
                BillingHistoryRecord.status == BILLING_PENDING,
            )
            .order_by(BillingHistoryRecord.billing_date)
            .with_for_update()
            .first()
        )
        if record is None:
            raise ReconciliationMiss("No pending billing record", context={"paymentReference": reference})

        sub = record.subscription
        notes = None
        processed = True
        if event_type not in (topics.EVENT_PAYMENT_SUCCEEDED, topics.EVENT_PAYMENT_FAILED):
            notes = f"ignored:{event_type}"
            processed = False
            log_event(logger, "webhook_event_type_ignored", event_type=event_type, payment_reference=reference)
        else:
            succeeded = event_type == topics.EVENT_PAYMENT_SUCCEEDED
            record.status = BILLING_PAID if succeeded else BILLING_FAILED
            if sub.status == STATUS_CANCELLED:
                # Cancelled while the charge was in flight: settle the record, leave the subscription closed
                notes = NOTE_CANCELLED
                log_event(logger, "webhook_settled_cancelled_subscription", subscription_id=sub.id,
                          payment_reference=reference, billing_status=record.status)
            elif succeeded:
                target = STATUS_TRIALING if (self.trials_enabled and sub.trial_end is not None) else STATUS_ACTIVE
                apply_transition(sub, target)
            else:
                apply_transition(sub, STATUS_PAST_DUE)

        audit = WebhookEvent(
            event_id=event_id,
            subscription_id=sub.id,
            payment_reference=reference,
            event_type=event_type,
            payload=event,
            processed=processed,
            retry_count=retry_count,
            notes=notes,
        )
        session.add(audit)
        return audit

    def _audit(self, event: Dict[str, Any], *, notes: str, retry_count: int = 0) -> Optional[WebhookEvent]:
        row = WebhookEvent(
            event_id=(event.get("payload") or {}).get("id"),
            payment_reference=event.get("paymentReference"),
            event_type=event.get("eventType") or "UNKNOWN",
            payload=event,
            processed=False,
            retry_count=retry_count,
            notes=notes,
        )
        try:
            with saga_transaction("audit_webhook") as session:
                session.add(row)
        except SubflowError:
            logger.exception("webhook_audit_failed notes=%s", notes)
            return None
        return row

    def _schedule_retry(self, event: Dict[str, Any], retry_count: int) -> None:
        if retry_count >= self.max_retries:
            log_event(logger, "webhook_retry_exhausted", logging.ERROR,
                      payment_reference=event.get("paymentReference"), retry_count=retry_count)
            return
        delay = self.retry_backoff * (2 ** retry_count)
        log_event(logger, "webhook_retry_scheduled", logging.WARNING,
                  payment_reference=event.get("paymentReference"), retry_count=retry_count + 1, delay=delay)
        self.scheduler.call_later(
            delay,
            self.gateway.emit,
            topics.SUBSCRIPTION_WEBHOOK,
            event,
            headers={RETRY_HEADER: retry_count + 1},
        )
