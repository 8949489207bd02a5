from subflow.messaging import topics
from subflow.messaging.router import KIND_EVENT, KIND_REQUEST, MessageRouter
from subflow.payments.engine import PaymentIntentEngine


def register_payment_routes(router: MessageRouter, engine: PaymentIntentEngine) -> None:
    """Topic table for the payment service."""

    def validate_payment_reference(message):
        return engine.validate_payment_reference((message.payload or {}).get("paymentId"))

    def create_payment_intent(message):
        p = message.payload or {}
        engine.create_payment_intent(
            subscription_id=p.get("subscriptionId"),
            user_id=p.get("userId"),
            amount=p.get("amount"),
            currency=p.get("currency"),
            payment_reference=p.get("paymentId"),
            description=p.get("description"),
            simulate_success=p.get("simulateSuccess", True),
        )

    def update_subscription(message):
        p = message.payload or {}
        return engine.update_subscription(
            subscription_id=p.get("subscriptionId"),
            gateway_plan_id=p.get("gatewayPlanId"),
            user_id=p.get("userId"),
        )

    def cancel_subscription(message):
        return engine.cancel_subscription(user_id=(message.payload or {}).get("userId"))

    def create_plan(message):
        return engine.create_plan(message.payload or {})

    def update_plan(message):
        return engine.update_plan(message.payload or {})

    def delete_plan(message):
        p = message.payload or {}
        return engine.delete_plan(gateway_plan_id=p.get("gatewayPlanId"), sync_ref=p.get("syncRef"))

    router.route(topics.VALIDATE_PAYMENT_REFERENCE, validate_payment_reference, KIND_REQUEST)
    router.route(topics.CREATE_PAYMENT_INTENT, create_payment_intent, KIND_EVENT)
    router.route(topics.UPDATE_SUBSCRIPTION, update_subscription, KIND_REQUEST)
    router.route(topics.CANCEL_SUBSCRIPTION, cancel_subscription, KIND_REQUEST)
    router.route(topics.CREATE_PLAN, create_plan, KIND_REQUEST)
    router.route(topics.UPDATE_PLAN, update_plan, KIND_REQUEST)
    router.route(topics.DELETE_PLAN, delete_plan, KIND_REQUEST)
