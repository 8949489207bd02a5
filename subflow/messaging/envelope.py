import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from subflow.utils.identifiers import new_id


@dataclass
class Message:
    """One broker message. `reply_to`/`correlation_id` are set only for requests."""

    topic: str
    payload: Any = None
    id: str = field(default_factory=new_id)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def expects_reply(self) -> bool:
        return bool(self.reply_to and self.correlation_id)

    def to_bytes(self) -> bytes:
        return json.dumps({
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "reply_to": self.reply_to,
            "headers": self.headers,
            "sent_at": self.sent_at,
        }, default=str, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Message":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            topic=data["topic"],
            payload=data.get("payload"),
            id=data.get("id") or new_id(),
            correlation_id=data.get("correlation_id"),
            reply_to=data.get("reply_to"),
            headers=data.get("headers") or {},
            sent_at=data.get("sent_at") or "",
        )


@dataclass
class Reply:
    correlation_id: str
    ok: bool = True
    result: Any = None
    error: Optional[Dict[str, str]] = None

    def to_bytes(self) -> bytes:
        return json.dumps({
            "correlation_id": self.correlation_id,
            "ok": self.ok,
            "result": self.result,
            "error": self.error,
        }, default=str, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Reply":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            correlation_id=data["correlation_id"],
            ok=bool(data.get("ok")),
            result=data.get("result"),
            error=data.get("error"),
        )

    @classmethod
    def failure(cls, correlation_id: str, exc: BaseException) -> "Reply":
        return cls(
            correlation_id=correlation_id,
            ok=False,
            error={"type": type(exc).__name__, "message": str(exc)},
        )
