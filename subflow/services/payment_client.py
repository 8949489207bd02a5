from typing import Any, Dict, Optional

from subflow.messaging import topics
from subflow.messaging.gateway import MessagingGateway


class PaymentServiceClient:
    """Typed wrapper around the payment service's broker topics."""

    def __init__(self, gateway: MessagingGateway):
        self.gateway = gateway

    def validate_payment_reference(self, payment_reference: str) -> bool:
        # True: reference unused, a new payment intent may start
        return bool(self.gateway.request(topics.VALIDATE_PAYMENT_REFERENCE, {"paymentId": payment_reference}))

    def create_payment_intent(self, *, subscription_id: str, user_id: str, amount: int, currency: str,
                              payment_reference: str, description: Optional[str] = None) -> str:
        return self.gateway.emit(topics.CREATE_PAYMENT_INTENT, {
            "subscriptionId": subscription_id,
            "userId": user_id,
            "amount": amount,
            "currency": currency,
            "paymentId": payment_reference,
            "description": description,
        })

    def update_subscription(self, *, subscription_id: str, gateway_plan_id: str, user_id: str) -> Optional[str]:
        return self.gateway.request(topics.UPDATE_SUBSCRIPTION, {
            "subscriptionId": subscription_id,
            "gatewayPlanId": gateway_plan_id,
            "userId": user_id,
        })

    def cancel_subscription(self, *, user_id: str) -> bool:
        return bool(self.gateway.request(topics.CANCEL_SUBSCRIPTION, {"userId": user_id}))

    def create_plan(self, fields: Dict[str, Any]) -> Optional[str]:
        return self.gateway.request(topics.CREATE_PLAN, fields)

    def update_plan(self, fields: Dict[str, Any]) -> bool:
        return bool(self.gateway.request(topics.UPDATE_PLAN, fields))

    def delete_plan(self, *, gateway_plan_id: Optional[str] = None, sync_ref: Optional[str] = None) -> bool:
        return bool(self.gateway.request(topics.DELETE_PLAN, {
            "gatewayPlanId": gateway_plan_id,
            "syncRef": sync_ref,
        }))
