"""
Builds the per-process service graph and the broker routing table.

SERVICE_ROLE decides which side of the saga this process serves:
"subscriptions", "payments", or "all" (both in one process, for dev/tests).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from subflow.cache import Cache, build_cache
from subflow.messaging import topics
from subflow.messaging.gateway import MessagingGateway
from subflow.messaging.router import KIND_EVENT, MessageRouter
from subflow.messaging.scheduler import ThreadScheduler
from subflow.messaging.transport import Broker, InMemoryBroker, build_broker
from subflow.payments.engine import PaymentIntentEngine
from subflow.payments.handlers import register_payment_routes
from subflow.services.payment_client import PaymentServiceClient
from subflow.services.plans import PlanRegistrySync
from subflow.services.reconciler import WebhookReconciler
from subflow.services.subscriptions import SubscriptionStateMachine

logger = logging.getLogger(__name__)

ROLE_ALL = "all"
ROLE_SUBSCRIPTIONS = "subscriptions"
ROLE_PAYMENTS = "payments"
ROLES = (ROLE_ALL, ROLE_SUBSCRIPTIONS, ROLE_PAYMENTS)


@dataclass
class Services:
    role: str
    broker: Broker
    gateway: MessagingGateway
    router: MessageRouter
    cache: Cache
    subscriptions: Optional[SubscriptionStateMachine] = None
    plans: Optional[PlanRegistrySync] = None
    reconciler: Optional[WebhookReconciler] = None
    payments: Optional[PaymentIntentEngine] = None

    def start(self) -> None:
        self.gateway.start()
        self.router.start()

    def stop(self) -> None:
        self.broker.stop()


def init_services(app) -> Services:
    cfg = app.config
    role = (cfg.get("SERVICE_ROLE") or ROLE_ALL).lower()
    if role not in ROLES:
        raise RuntimeError(f"SERVICE_ROLE must be one of {', '.join(ROLES)}; got {role!r}")

    broker = build_broker(
        cfg.get("BROKER_URL"),
        synchronous=bool(cfg.get("BROKER_SYNCHRONOUS")),
        workers=int(cfg.get("BROKER_WORKERS", 8)),
    )
    gateway = MessagingGateway(
        broker,
        service_name=cfg.get("SERVICE_NAME", "subflow"),
        default_timeout=float(cfg.get("BROKER_REQUEST_TIMEOUT", 5)),
    )
    router = MessageRouter(app, broker, gateway)
    scheduler = ThreadScheduler(app)
    services = Services(role=role, broker=broker, gateway=gateway, router=router,
                        cache=build_cache(cfg.get("CACHE_URL")))

    if role in (ROLE_ALL, ROLE_SUBSCRIPTIONS):
        client = PaymentServiceClient(gateway)
        trials = bool(cfg.get("TRIALS_ENABLED"))
        services.subscriptions = SubscriptionStateMachine(client, trials_enabled=trials)
        services.plans = PlanRegistrySync(client)
        services.reconciler = WebhookReconciler(
            gateway,
            services.cache,
            scheduler=scheduler,
            trials_enabled=trials,
            max_retries=int(cfg.get("WEBHOOK_MAX_RETRIES", 3)),
            retry_backoff=float(cfg.get("WEBHOOK_RETRY_BACKOFF", 2)),
            dedupe_ttl=int(cfg.get("WEBHOOK_DEDUPE_TTL", 86400)),
        )
        router.route(topics.SUBSCRIPTION_WEBHOOK, services.reconciler.handle_message, KIND_EVENT)

    if role in (ROLE_ALL, ROLE_PAYMENTS):
        services.payments = PaymentIntentEngine(
            gateway,
            scheduler,
            delay=float(cfg.get("PAYMENT_SIMULATION_DELAY", 3)),
            default_currency=cfg.get("DEFAULT_CURRENCY", "USD"),
        )
        register_payment_routes(router, services.payments)

    app.extensions["subflow"] = services

    # In-process broker: nothing else will ever consume, so start now.
    # External brokers are consumed by `flask worker run`.
    if isinstance(broker, InMemoryBroker):
        services.start()
    logger.debug("services_initialized role=%s topics=%s", role, ",".join(router.topics))
    return services


def get_services() -> Services:
    return current_app.extensions["subflow"]
