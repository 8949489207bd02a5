import logging
from functools import partial
from typing import Any, Callable, Dict, Tuple

from subflow.errors import SubflowError
from subflow.messaging.envelope import Message, Reply
from subflow.messaging.gateway import MessagingGateway
from subflow.messaging.transport import Broker
from subflow.observability import log_event

logger = logging.getLogger(__name__)

KIND_REQUEST = "request"
KIND_EVENT = "event"

Handler = Callable[[Message], Any]


class MessageRouter:
    """
    Explicit topic -> handler table for one service.

    Every delivery runs inside a fresh app context, so each handler gets its
    own database session no matter which thread the broker delivers on.
    Request handlers answer through the gateway (errors travel back as error
    replies); event handler failures are logged and dropped.
    """

    def __init__(self, app, broker: Broker, gateway: MessagingGateway):
        self.app = app
        self.broker = broker
        self.gateway = gateway
        self._routes: Dict[str, Tuple[Handler, str]] = {}
        self._started = False

    def route(self, topic: str, handler: Handler, kind: str = KIND_REQUEST) -> None:
        if kind not in (KIND_REQUEST, KIND_EVENT):
            raise ValueError(f"Unknown handler kind: {kind!r}")
        if topic in self._routes:
            raise ValueError(f"Topic {topic!r} is already routed")
        self._routes[topic] = (handler, kind)

    @property
    def topics(self):
        return sorted(self._routes)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for topic in self._routes:
            self.broker.subscribe(topic, partial(self._dispatch, topic))
        self.broker.start()
        logger.info("router_started topics=%s", ",".join(self.topics))

    def _dispatch(self, topic: str, body: bytes) -> None:
        try:
            message = Message.from_bytes(body)
        except (ValueError, KeyError):
            logger.warning("router_message_malformed topic=%s", topic)
            return

        handler, kind = self._routes[topic]
        with self.app.app_context():
            try:
                result = handler(message)
            except SubflowError as exc:
                log_event(logger, "handler_rejected", logging.WARNING,
                          topic=topic, message_id=message.id, error=exc.error_code, detail=exc.message)
                self._answer(message, Reply.failure(message.correlation_id, exc))
                return
            except Exception as exc:
                logger.exception("handler_crashed topic=%s message_id=%s", topic, message.id)
                self._answer(message, Reply.failure(message.correlation_id, exc))
                return

        if kind == KIND_REQUEST:
            self._answer(message, Reply(correlation_id=message.correlation_id, ok=True, result=result))

    def _answer(self, message: Message, reply: Reply) -> None:
        if message.expects_reply:
            self.gateway.reply(message, reply)
