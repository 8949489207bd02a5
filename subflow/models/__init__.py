# Subscription service store (default bind)
from .user import User
from .plan import Plan
from .subscription import Subscription
from .billing_history import BillingHistoryRecord
from .webhook_event import WebhookEvent
from .plan_sync_intent import PlanSyncIntent

# Payment service store ("payments" bind)
from .payment import Payment
from .gateway_plan import GatewayPlan

__all__ = [
    "User",
    "Plan",
    "Subscription",
    "BillingHistoryRecord",
    "WebhookEvent",
    "PlanSyncIntent",
    "Payment",
    "GatewayPlan",
]
