from .envelope import Message, Reply
from .gateway import MessagingGateway
from .router import MessageRouter, KIND_EVENT, KIND_REQUEST
from .scheduler import ThreadScheduler
from .transport import Broker, InMemoryBroker, RedisBroker, build_broker

__all__ = [
    "Message",
    "Reply",
    "MessagingGateway",
    "MessageRouter",
    "KIND_EVENT",
    "KIND_REQUEST",
    "ThreadScheduler",
    "Broker",
    "InMemoryBroker",
    "RedisBroker",
    "build_broker",
]
