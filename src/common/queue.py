"""
Reliable Work Queue
===================

Both inbound channels (upload triggers and job-completion notifications)
are redis lists. Delivery is at-least-once:

- producers ``LPUSH`` JSON envelopes onto the queue
- a consumer moves each message into a per-queue processing list with
  ``BLMOVE``/``LMOVE`` (so nothing is lost if the consumer dies)
- ``ack`` removes the message from the processing list
- ``nack`` moves it back onto the queue for redelivery
- ``recover`` re-queues everything left in the processing list, and is
  called when a daemon starts

When more messages arrive than the daemon's workers can take, they simply
wait in the list; nothing is dropped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import structlog
from redis import Redis

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    """A reserved message: the raw bytes (needed to ack) and the decoded body."""

    raw: bytes
    body: Any


class RedisWorkQueue:
    """A reliable FIFO queue on top of two redis lists."""

    def __init__(self, redis: Redis, name: str):
        self.redis = redis
        self.name = name
        self.processing_name = f"{name}:processing"

    def push(self, payload: Any) -> None:
        """Enqueue a JSON-serialisable payload."""
        self.redis.lpush(self.name, json.dumps(payload).encode("utf-8"))

    def reserve(self, count: int, timeout: float) -> list[QueueMessage]:
        """
        Reserve up to ``count`` messages.

        Blocks up to ``timeout`` seconds for the first message, then takes
        whatever else is immediately available.
        """
        first = self.redis.blmove(
            self.name, self.processing_name, timeout, "RIGHT", "LEFT"
        )
        if first is None:
            return []
        raws = [first]
        while len(raws) < count:
            raw = self.redis.lmove(self.name, self.processing_name, "RIGHT", "LEFT")
            if raw is None:
                break
            raws.append(raw)
        return [QueueMessage(raw=raw, body=_decode(raw)) for raw in raws]

    def ack(self, message: QueueMessage) -> None:
        self.redis.lrem(self.processing_name, 1, message.raw)

    def nack(self, message: QueueMessage) -> None:
        """Return a message to the queue so it is delivered again."""
        pipe = self.redis.pipeline()
        pipe.lrem(self.processing_name, 1, message.raw)
        pipe.rpush(self.name, message.raw)
        pipe.execute()

    def recover(self) -> int:
        """Re-queue messages a previous consumer reserved but never acked."""
        moved = 0
        while self.redis.lmove(self.processing_name, self.name, "LEFT", "RIGHT"):
            moved += 1
        if moved:
            log.warning("Re-queued in-flight messages", queue=self.name, count=moved)
        return moved


def _decode(raw: bytes) -> Any:
    """Decode a message body; undecodable bodies come back as None."""
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        log.warning("Queue message is not valid JSON", size=len(raw))
        return None
