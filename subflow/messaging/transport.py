"""
Broker transports.

A transport moves opaque byte payloads between named channels. It knows
nothing about requests, replies or topics-as-operations; that lives in
MessagingGateway and MessageRouter. One consumer callback per channel
(competing-consumer semantics are the broker's job, not ours).
"""

import logging
import threading
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)

Callback = Callable[[bytes], None]


class Broker:
    def publish(self, channel: str, body: bytes) -> None:
        raise NotImplementedError

    def subscribe(self, channel: str, callback: Callback) -> None:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


def _safe_deliver(channel: str, callback: Callback, body: bytes) -> None:
    # A consumer crash must never take the delivery thread down with it
    try:
        callback(body)
    except Exception:
        logger.exception("broker_consumer_crashed channel=%s", channel)


class InMemoryBroker(Broker):
    """
    In-process broker for development, tests and single-process deployments.

    Messages published before a consumer subscribes are held and delivered on
    subscribe, like a durable queue. With synchronous=True delivery happens in
    the publishing thread, which makes whole sagas deterministic in tests.
    """

    def __init__(self, synchronous: bool = False, workers: int = 8):
        self.synchronous = synchronous
        self._consumers: Dict[str, Callback] = {}
        self._backlog: Dict[str, Deque[bytes]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="broker")

    def publish(self, channel: str, body: bytes) -> None:
        with self._lock:
            callback = self._consumers.get(channel)
            if callback is None:
                self._backlog[channel].append(body)
                logger.debug("broker_message_held channel=%s backlog=%d", channel, len(self._backlog[channel]))
                return
        self._dispatch(channel, callback, body)

    def subscribe(self, channel: str, callback: Callback) -> None:
        with self._lock:
            if channel in self._consumers:
                raise ValueError(f"Channel {channel!r} already has a consumer")
            self._consumers[channel] = callback
            held = list(self._backlog.pop(channel, ()))
        for body in held:
            self._dispatch(channel, callback, body)

    def unsubscribe(self, channel: str) -> None:
        with self._lock:
            self._consumers.pop(channel, None)

    def pending(self, channel: str) -> List[bytes]:
        """Messages held for a channel that has no consumer yet."""
        with self._lock:
            return list(self._backlog.get(channel, ()))

    def _dispatch(self, channel: str, callback: Callback, body: bytes) -> None:
        if self._executor is None:
            _safe_deliver(channel, callback, body)
        else:
            self._executor.submit(_safe_deliver, channel, callback, body)

    def stop(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)


class RedisBroker(Broker):
    """
    Redis-list transport: RPUSH to publish, one BLPOP loop per process to
    consume, handlers run on a thread pool so a slow handler never blocks
    delivery for other topics.
    """

    def __init__(self, url: str, workers: int = 8, prefix: str = "subflow:", poll_timeout: int = 1):
        self.client = redis.Redis.from_url(url)
        self.prefix = prefix
        self.poll_timeout = poll_timeout
        self._consumers: Dict[str, Callback] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="broker")
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _key(self, channel: str) -> str:
        return f"{self.prefix}{channel}"

    def publish(self, channel: str, body: bytes) -> None:
        self.client.rpush(self._key(channel), body)

    def subscribe(self, channel: str, callback: Callback) -> None:
        with self._lock:
            if channel in self._consumers:
                raise ValueError(f"Channel {channel!r} already has a consumer")
            self._consumers[channel] = callback

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._consume_loop, name="broker-consumer", daemon=True)
        self._thread.start()

    def _consume_loop(self) -> None:
        while not self._stopping.is_set():
            with self._lock:
                keys = [self._key(c) for c in self._consumers]
            if not keys:
                self._stopping.wait(self.poll_timeout)
                continue
            try:
                item = self.client.blpop(keys, timeout=self.poll_timeout)
            except redis.RedisError:
                logger.exception("broker_poll_failed")
                self._stopping.wait(self.poll_timeout)
                continue
            if not item:
                continue
            key, body = item
            key = key.decode("utf-8") if isinstance(key, bytes) else key
            channel = key[len(self.prefix):]
            with self._lock:
                callback = self._consumers.get(channel)
            if callback is None:
                # Unsubscribed between poll and pop: put it back for someone else
                self.client.lpush(key, body)
                continue
            self._executor.submit(_safe_deliver, channel, callback, body)

    def stop(self) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_timeout + 1)
            self._thread = None
        self._executor.shutdown(wait=True)


def build_broker(url: str, *, synchronous: bool = False, workers: int = 8) -> Broker:
    url = (url or "memory://").strip()
    if url.startswith("memory://"):
        return InMemoryBroker(synchronous=synchronous, workers=workers)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisBroker(url, workers=workers)
    raise RuntimeError(f"Unsupported BROKER_URL scheme: {url}")
