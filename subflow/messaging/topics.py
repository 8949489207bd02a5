"""
Broker topic names shared by both services.

Names are part of the wire contract; keep them stable across releases.
"""

# Request/reply unless noted
VALIDATE_PAYMENT_REFERENCE = "payment_service_validate_payment_id"
CREATE_PAYMENT_INTENT = "payment_service_create_payment_intent"  # emit
UPDATE_SUBSCRIPTION = "payment_service_update_subscription"
CANCEL_SUBSCRIPTION = "payment_service_cancel_subscription"
CREATE_PLAN = "payment_service_create_plan"
UPDATE_PLAN = "payment_service_update_plan"
DELETE_PLAN = "payment_service_delete_plan"

# payment -> subscription, emit
SUBSCRIPTION_WEBHOOK = "user_subscription_service_create_subscription"

PAYMENT_SERVICE_TOPICS = (
    VALIDATE_PAYMENT_REFERENCE,
    CREATE_PAYMENT_INTENT,
    UPDATE_SUBSCRIPTION,
    CANCEL_SUBSCRIPTION,
    CREATE_PLAN,
    UPDATE_PLAN,
    DELETE_PLAN,
)
SUBSCRIPTION_SERVICE_TOPICS = (SUBSCRIPTION_WEBHOOK,)

# Webhook event types (payload["eventType"])
EVENT_PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
EVENT_PAYMENT_FAILED = "PAYMENT_FAILED"
EVENT_PAYMENT_REFUNDED = "PAYMENT_REFUNDED"

# Webhook delivery status (payload["status"])
DELIVERY_DELIVERED = "DELIVERED"
