"""
Fulfillment — Redis Streams サブスクライバー

コンシューマグループでストリームを購読し、受信したエンベロープを
サービスごとの dispatch 関数に渡す。

  成功 / 重複 / 対象なし       → XACK
  再試行可能なエラー           → XACK しない (pending に残り再配信される)
  配信回数が上限に達したエラー → <stream>.dead に退避して XACK
  再試行不可のエラー・不正形式 → <stream>.dead に退避して XACK

配信回数は XPENDING の times_delivered を使う。
一定時間以上 pending のままのメッセージは、受信の有無にかかわらず
reclaim_interval ごとに XAUTOCLAIM で取り直して再処理する。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError
from sqlalchemy.exc import SQLAlchemyError

from .bus import Envelope
from .errors import FulfillmentError

logger = logging.getLogger(__name__)

Dispatch = Callable[[Envelope], Awaitable[Any]]

DEFAULT_MAX_DELIVERIES = 5


async def ensure_groups(redis: aioredis.Redis, streams: list[str], group: str) -> None:
    for stream in streams:
        try:
            await redis.xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise


async def _dead_letter(
    redis: aioredis.Redis, stream: str, group: str, message_id: str, fields: dict, error: str
) -> None:
    await redis.xadd(f"{stream}.dead", {**fields, "error": error, "group": group})
    await redis.xack(stream, group, message_id)
    logger.error("Dead-lettered message %s from %s: %s", message_id, stream, error)


async def _times_delivered(redis: aioredis.Redis, stream: str, group: str, message_id: str) -> int:
    entries = await redis.xpending_range(stream, group, min=message_id, max=message_id, count=1)
    if not entries:
        return 1
    return int(entries[0]["times_delivered"])


async def process_message(
    redis: aioredis.Redis,
    stream: str,
    group: str,
    message_id: str,
    fields: dict,
    dispatch: Dispatch,
    max_deliveries: int = DEFAULT_MAX_DELIVERIES,
) -> bool:
    """
    1 メッセージを処理する。XACK した場合は True を返す。

    再試行可能な失敗は pending に残すが、配信回数が max_deliveries に
    達していれば <stream>.dead に退避して運用者に引き渡す。
    """
    try:
        envelope = Envelope.from_fields(fields)
    except (KeyError, ValueError) as e:
        await _dead_letter(redis, stream, group, message_id, fields, f"Malformed envelope: {e}")
        return True

    try:
        result = await dispatch(envelope)
    except FulfillmentError as e:
        if not e.retryable:
            await _dead_letter(redis, stream, group, message_id, fields, f"{type(e).__name__}: {e}")
            return True
        logger.warning("Retryable failure for %s %s: %s", envelope.event_type, envelope.event_id, e)
        error = f"{type(e).__name__}: {e}"
    except SQLAlchemyError as e:
        logger.exception("Storage failure for %s %s", envelope.event_type, envelope.event_id)
        error = f"{type(e).__name__}: {e}"
    except Exception as e:
        logger.exception("Failed to process event %s %s", envelope.event_type, envelope.event_id)
        error = f"{type(e).__name__}: {e}"
    else:
        await redis.xack(stream, group, message_id)
        logger.info("Processed %s %s: %s", envelope.event_type, envelope.event_id, result)
        return True

    deliveries = await _times_delivered(redis, stream, group, message_id)
    if deliveries < max_deliveries:
        logger.info(
            "Leaving %s pending for redelivery (%d/%d)", envelope.event_id, deliveries, max_deliveries
        )
        return False
    await _dead_letter(
        redis, stream, group, message_id, fields, f"Gave up after {deliveries} deliveries: {error}"
    )
    return True


async def _reclaim(
    redis: aioredis.Redis,
    streams: list[str],
    group: str,
    consumer: str,
    dispatch: Dispatch,
    min_idle_ms: int,
    max_deliveries: int,
) -> None:
    for stream in streams:
        claimed = await redis.xautoclaim(
            stream, group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=10
        )
        for message_id, fields in claimed[1]:
            if fields:
                await process_message(
                    redis, stream, group, message_id, fields, dispatch, max_deliveries
                )


async def run_subscriber(
    redis: aioredis.Redis,
    streams: list[str],
    group: str,
    consumer: str,
    dispatch: Dispatch,
    shutdown_event: asyncio.Event,
    block_ms: int = 1000,
    reclaim_idle_ms: int = 60_000,
    reclaim_interval: float | None = None,
    max_deliveries: int = DEFAULT_MAX_DELIVERIES,
) -> None:
    """
    streams を購読し、受信したイベントを dispatch に渡す。
    shutdown_event がセットされるまで無限ループで待機する。
    reclaim_interval を省略すると reclaim_idle_ms と同じ間隔で取り直す。
    """
    await ensure_groups(redis, streams, group)
    logger.info("Subscribed to %s as %s/%s", ", ".join(streams), group, consumer)

    loop = asyncio.get_running_loop()
    if reclaim_interval is None:
        reclaim_interval = reclaim_idle_ms / 1000
    next_reclaim = loop.time() + reclaim_interval

    while not shutdown_event.is_set():
        try:
            response = await redis.xreadgroup(
                group, consumer, {s: ">" for s in streams}, count=10, block=block_ms
            )
            for stream, messages in response or []:
                for message_id, fields in messages:
                    await process_message(
                        redis, stream, group, message_id, fields, dispatch, max_deliveries
                    )

            if loop.time() >= next_reclaim:
                await _reclaim(redis, streams, group, consumer, dispatch, reclaim_idle_ms, max_deliveries)
                next_reclaim = loop.time() + reclaim_interval
        except RedisError:
            logger.exception("Redis error while consuming %s", ", ".join(streams))
            await asyncio.sleep(1.0)
