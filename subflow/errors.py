"""
Saga error taxonomy.

Every error raised across the subscription/payment seam derives from
SubflowError so the HTTP layer can map it to a status code, and the message
consumers can tell domain failures from crashes.
"""

from typing import Any, Dict, Optional


class SubflowError(Exception):
    """Base error with an API-facing code and status."""

    status_code = 400
    error_code = "subflow_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error_code, "message": self.message, "code": self.status_code}
        if self.context:
            payload["context"] = self.context
        return payload


# ----- 4xx: user-correctable -----

class ValidationError(SubflowError):
    error_code = "validation_error"


class InvalidUserError(ValidationError):
    error_code = "invalid_user"


class InvalidPlanError(ValidationError):
    error_code = "invalid_plan"


class InvalidPaymentReferenceError(ValidationError):
    error_code = "invalid_payment_reference"


class SamePlanError(ValidationError):
    error_code = "same_plan"


class PlanNotReplicatedError(ValidationError):
    error_code = "plan_not_replicated"


class NotFoundError(SubflowError):
    status_code = 404
    error_code = "not_found"


class SubscriptionNotFoundError(NotFoundError):
    error_code = "subscription_not_found"


class PlanNotFoundError(NotFoundError):
    error_code = "plan_not_found"


class ConflictError(SubflowError):
    status_code = 409
    error_code = "conflict"


class DuplicateNameError(ConflictError):
    error_code = "duplicate_name"


class HasActiveSubscriptionsError(ConflictError):
    error_code = "plan_has_active_subscriptions"


class InvalidTransitionError(ConflictError):
    error_code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move subscription from {current} to {target}",
            context={"from": current, "to": target},
        )


# ----- 5xx: remote side / broker -----

class GatewayError(SubflowError):
    status_code = 502
    error_code = "gateway_error"


class GatewayTimeoutError(GatewayError):
    """A broker request got no correlated reply in time. Retryable."""

    status_code = 504
    error_code = "gateway_timeout"

    def __init__(self, topic: str, timeout: float):
        super().__init__(
            f"No reply on {topic!r} within {timeout:.2f}s",
            context={"topic": topic, "timeout": timeout},
        )
        self.topic = topic
        self.timeout = timeout


class RemoteCallError(GatewayError):
    """The remote handler raised; its error travelled back in the reply."""

    error_code = "remote_call_failed"

    def __init__(self, topic: str, remote_type: str, message: str):
        super().__init__(
            f"{topic}: {remote_type}: {message}",
            context={"topic": topic, "remote_type": remote_type},
        )
        self.topic = topic
        self.remote_type = remote_type


class PaymentGatewayError(GatewayError):
    """The payment service answered, but with a negative/empty result."""

    error_code = "payment_gateway_rejected"


# ----- internal -----

class ReconciliationMiss(SubflowError):
    """Webhook outcome with no matching PENDING billing record. Logged, never surfaced."""

    status_code = 200
    error_code = "reconciliation_miss"


class TransactionRolledBack(SubflowError):
    """Unexpected failure inside a local saga transaction; all its writes were discarded."""

    status_code = 500
    error_code = "transaction_rolled_back"
