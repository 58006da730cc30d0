"""
Fulfillment — メッセージバス (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者がダウンしている間の
イベントは失われる。ここでは Redis Streams を使う:

  XADD        発行。戻った時点で「バスが受理した」とみなす
  XREADGROUP  コンシューマグループで購読
  XACK        ハンドラが成功したときだけ確認応答
  XAUTOCLAIM  確認応答されないまま放置されたメッセージを再配信

ストリームはイベントを発行するコンテキストごとに 1 本:
  order.created            → order_events
  inventory.reserved       → inventory_events
  payment.completed        → payment_events
"""

import json
import logging
from datetime import datetime
from typing import Any, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .errors import DeliveryFailure
from .outbox import OutboxEvent

logger = logging.getLogger(__name__)


def stream_for(event_type: str) -> str:
    return f"{event_type.split('.', 1)[0]}_events"


class Envelope(BaseModel):
    """バス上のメッセージ。event_id は Outbox のイベント ID をそのまま使う。"""

    event_id: str
    event_type: str
    aggregate_id: str
    occurred_at: datetime
    source: str
    payload: dict[str, Any]

    @classmethod
    def from_outbox(cls, event: OutboxEvent, source: str) -> "Envelope":
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
            occurred_at=event.event_data.get("occurred_at", event.created_at),
            source=source,
            payload=event.event_data,
        )

    def to_fields(self) -> dict[str, str]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "aggregate_id": self.aggregate_id,
            "occurred_at": self.occurred_at.isoformat(),
            "source": self.source,
            "payload": json.dumps(self.payload, default=str),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "Envelope":
        return cls(**{**fields, "payload": json.loads(fields["payload"])})


class EventBus(Protocol):
    async def publish(self, envelope: Envelope) -> None: ...


class RedisStreamBus:
    def __init__(self, redis: aioredis.Redis, maxlen: int = 100_000) -> None:
        self.redis = redis
        self.maxlen = maxlen

    async def publish(self, envelope: Envelope) -> None:
        stream = stream_for(envelope.event_type)
        try:
            message_id = await self.redis.xadd(
                stream, envelope.to_fields(), maxlen=self.maxlen, approximate=True
            )
        except (RedisError, OSError) as e:
            raise DeliveryFailure(
                f"Failed to publish {envelope.event_type} {envelope.event_id}: {e}"
            ) from e
        logger.info(
            "Published %s %s to %s as %s",
            envelope.event_type, envelope.event_id, stream, message_id,
        )
