"""
Fulfillment — 冪等性ガード

at-least-once 配信では同じイベントが何度も届く。
イベント ID をキーにした条件付き INSERT で「最初の 1 回」だけを通す。

  try_claim() → True   : 初回。呼び出し側は副作用を実行する
  try_claim() → False  : 処理済み。副作用をすべてスキップして正常終了する
  例外                 : ストレージ障害。処理済みにせず再配信に任せる

クレームの行は呼び出し側のトランザクションに参加する。
副作用と一緒にコミットされ、失敗すれば一緒にロールバックされるので、
「行が存在する = 副作用は適用済み」が常に成り立つ。
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import epoch, to_iso

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)


class IdempotencyGuard:
    def __init__(self, table: str = "order_idempotency", ttl: timedelta = DEFAULT_TTL) -> None:
        self.table = table
        self.ttl = ttl

    async def try_claim(
        self,
        session: AsyncSession,
        event_id: str,
        event_type: str,
        aggregate_id: str,
    ) -> bool:
        now = datetime.now(timezone.utc)
        result = await session.execute(
            text(f"""
                INSERT INTO {self.table}
                    (event_id, event_type, aggregate_id, processed_at, expires_at)
                VALUES
                    (:event_id, :event_type, :aggregate_id, :processed_at, :expires_at)
                ON CONFLICT (event_id) DO NOTHING
            """),
            {
                "event_id": event_id,
                "event_type": event_type,
                "aggregate_id": aggregate_id,
                "processed_at": to_iso(now),
                "expires_at": epoch(now + self.ttl),
            },
        )
        if result.rowcount == 0:
            logger.info("Event %s (%s) already processed, skipping", event_id, event_type)
            return False
        return True

    async def is_processed(self, session: AsyncSession, event_id: str) -> bool:
        result = await session.execute(
            text(f"SELECT 1 FROM {self.table} WHERE event_id = :event_id"),
            {"event_id": event_id},
        )
        return result.first() is not None

    async def purge_expired(self, session: AsyncSession, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = await session.execute(
            text(f"DELETE FROM {self.table} WHERE expires_at < :now"),
            {"now": epoch(now)},
        )
        return result.rowcount
