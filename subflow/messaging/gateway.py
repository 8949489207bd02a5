"""
Request/reply and fire-and-forget over a broker transport.

`request` blocks only the calling thread: the waiter is a Future keyed by
correlation id, resolved by the reply listener when the correlated reply
lands on this process's private reply channel.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

from subflow.errors import GatewayTimeoutError, RemoteCallError
from subflow.messaging.envelope import Message, Reply
from subflow.messaging.transport import Broker
from subflow.observability import log_event
from subflow.utils.identifiers import new_id

logger = logging.getLogger(__name__)


class MessagingGateway:
    def __init__(self, broker: Broker, service_name: str = "subflow", default_timeout: float = 5.0):
        self.broker = broker
        self.service_name = service_name
        self.default_timeout = default_timeout
        self.reply_channel = f"replies.{service_name}.{uuid.uuid4().hex[:12]}"
        self._waiters: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._listening = False

    def start(self) -> None:
        with self._lock:
            if self._listening:
                return
            self._listening = True
        self.broker.subscribe(self.reply_channel, self._on_reply)
        self.broker.start()

    def request(self, topic: str, payload: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Publish `payload` on `topic` and wait for the correlated reply.

        Returns the remote result. Raises GatewayTimeoutError when no reply
        arrives in time and RemoteCallError when the remote handler failed.
        """
        self.start()
        timeout = self.default_timeout if timeout is None else timeout
        message = Message(topic=topic, payload=payload, correlation_id=new_id(), reply_to=self.reply_channel)

        waiter: Future = Future()
        with self._lock:
            self._waiters[message.correlation_id] = waiter
        try:
            self.broker.publish(topic, message.to_bytes())
            try:
                reply = waiter.result(timeout=timeout)
            except FutureTimeoutError:
                log_event(logger, "gateway_request_timeout", logging.WARNING,
                          topic=topic, correlation_id=message.correlation_id, timeout=timeout)
                raise GatewayTimeoutError(topic, timeout) from None
        finally:
            with self._lock:
                self._waiters.pop(message.correlation_id, None)

        if not reply.ok:
            error = reply.error or {}
            raise RemoteCallError(topic, error.get("type", "Error"), error.get("message", ""))
        return reply.result

    def emit(self, topic: str, payload: Any = None, headers: Optional[Dict[str, Any]] = None) -> str:
        message = Message(topic=topic, payload=payload, headers=dict(headers or {}))
        self.broker.publish(topic, message.to_bytes())
        logger.debug("gateway_emit topic=%s id=%s", topic, message.id)
        return message.id

    def reply(self, message: Message, reply: Reply) -> None:
        self.broker.publish(message.reply_to, reply.to_bytes())

    def _on_reply(self, body: bytes) -> None:
        try:
            reply = Reply.from_bytes(body)
        except (ValueError, KeyError):
            logger.warning("gateway_reply_malformed channel=%s", self.reply_channel)
            return
        with self._lock:
            waiter = self._waiters.get(reply.correlation_id)
            if waiter is None or waiter.done():
                # Caller already timed out, or a duplicate delivery
                logger.debug("gateway_reply_dropped correlation_id=%s", reply.correlation_id)
                return
            waiter.set_result(reply)
