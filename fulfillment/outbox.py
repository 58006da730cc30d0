"""
Fulfillment — Outbox ストア

Outbox パターン:
  集約の新しい状態と、その変更で発生したドメインイベントを
  同じ DB トランザクションで保存する。バスへの配信は別プロセス
  (EventRelay) が非同期に行う。

  ┌──────────┐  1 トランザクション  ┌──────────────────┐
  │ 集約の行 │ ───────────────────▶ │ orders           │
  │ イベント │ ───────────────────▶ │ order_outbox     │
  └──────────┘                      └────────┬─────────┘
                                             │ ポーリング
                                    ┌────────▼─────────┐
                                    │ EventRelay → バス │
                                    └──────────────────┘

このモジュールはコミットしない。コミットは呼び出し側
(ユースケース / ハンドラ / リレー) が db.commit() で行う。
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, Sequence
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import epoch, from_iso, to_iso
from .errors import StorageConflict

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETENTION = timedelta(days=30)


class DomainEvent(Protocol):
    event_type: str
    occurred_at: datetime

    def model_dump(self, *, mode: str = ...) -> dict[str, Any]: ...


class OutboxAggregate(Protocol):
    """
    Outbox に保存できる集約の能力 (identity / version / pending events)。

    version == 0 はまだ永続化されていないことを表す。
    """

    id: str
    version: int

    @property
    def pending_events(self) -> list[DomainEvent]: ...

    def clear_events(self) -> None: ...

    def to_row(self) -> dict[str, Any]: ...


class OutboxEvent(BaseModel):
    event_id: str
    aggregate_id: str
    event_type: str
    event_data: dict[str, Any]
    published: bool = False
    created_at: datetime
    published_at: datetime | None = None
    retry_count: int = 0
    expires_at: int


def _row_to_event(row) -> OutboxEvent:
    data = row.event_data
    return OutboxEvent(
        event_id=row.event_id,
        aggregate_id=row.aggregate_id,
        event_type=row.event_type,
        event_data=json.loads(data) if isinstance(data, str) else data,
        published=bool(row.published),
        created_at=from_iso(row.created_at),
        published_at=from_iso(row.published_at),
        retry_count=row.retry_count,
        expires_at=row.expires_at,
    )


class OutboxStore:
    def __init__(
        self,
        table: str = "order_outbox",
        aggregate_table: str | None = "orders",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self.table = table
        self.aggregate_table = aggregate_table
        self.max_retries = max_retries
        self.retention = retention

    # ── 書き込み ─────────────────────────────────

    async def save_with_events(
        self,
        session: AsyncSession,
        aggregate: OutboxAggregate,
    ) -> list[OutboxEvent]:
        """
        集約の現在の行と未保存イベントをすべて同じトランザクションに書き込む。

        version による楽観的ロック:
          version == 0 なら INSERT、それ以外は
          WHERE version = :expected 付きの UPDATE を行う。
          更新行が 0 件なら別の書き込みが先行している → StorageConflict。

        イベントは Outbox に渡した時点で集約から取り除く。
        コミットに失敗した場合、呼び出し側は集約を読み直して
        ユースケースを最初からやり直す。
        """
        if self.aggregate_table is None:
            raise TypeError(f"{self.table} is not bound to an aggregate table")

        await self._write_aggregate(session, aggregate)
        events = list(aggregate.pending_events)
        saved = await self.append(session, aggregate.id, events) if events else []

        aggregate.version += 1
        aggregate.clear_events()
        logger.info(
            "Saved %s %s (version %d) with %d events",
            self.aggregate_table, aggregate.id, aggregate.version, len(saved),
        )
        return saved

    async def append(
        self,
        session: AsyncSession,
        aggregate_id: str,
        events: Sequence[DomainEvent],
    ) -> list[OutboxEvent]:
        """集約行を持たない書き込み (参加サービスの結果イベントなど) 用。"""
        now = datetime.now(timezone.utc)
        expires_at = epoch(now + self.retention)
        saved = []
        for index, event in enumerate(events):
            # 同じ保存で発生したイベントの順序を created_at に残す
            outbox_event = OutboxEvent(
                event_id=str(uuid4()),
                aggregate_id=aggregate_id,
                event_type=event.event_type,
                event_data=event.model_dump(mode="json"),
                created_at=now + timedelta(microseconds=index),
                expires_at=expires_at,
            )
            await session.execute(
                text(f"""
                    INSERT INTO {self.table}
                        (event_id, aggregate_id, event_type, event_data, published,
                         created_at, published_at, retry_count, expires_at)
                    VALUES
                        (:event_id, :aggregate_id, :event_type, :event_data, :published,
                         :created_at, NULL, 0, :expires_at)
                """),
                {
                    "event_id": outbox_event.event_id,
                    "aggregate_id": aggregate_id,
                    "event_type": outbox_event.event_type,
                    "event_data": json.dumps(outbox_event.event_data),
                    "published": False,
                    "created_at": to_iso(outbox_event.created_at),
                    "expires_at": expires_at,
                },
            )
            saved.append(outbox_event)
        return saved

    async def _write_aggregate(self, session: AsyncSession, aggregate: OutboxAggregate) -> None:
        row = dict(aggregate.to_row())
        row.pop("version", None)
        columns = list(row)

        if aggregate.version == 0:
            try:
                await session.execute(
                    text(f"""
                        INSERT INTO {self.aggregate_table} ({", ".join(columns)}, version)
                        VALUES ({", ".join(":" + c for c in columns)}, 1)
                    """),
                    row,
                )
            except IntegrityError as e:
                raise StorageConflict(
                    f"{self.aggregate_table} {aggregate.id} already exists"
                ) from e
            return

        assignments = ", ".join(f"{c} = :{c}" for c in columns if c != "id")
        result = await session.execute(
            text(f"""
                UPDATE {self.aggregate_table}
                SET {assignments}, version = :expected_version + 1
                WHERE id = :id AND version = :expected_version
            """),
            {**row, "expected_version": aggregate.version},
        )
        if result.rowcount == 0:
            raise StorageConflict(
                f"{self.aggregate_table} {aggregate.id} was modified concurrently "
                f"(expected version {aggregate.version})"
            )

    async def mark_published(self, session: AsyncSession, event_id: str) -> bool:
        """published フラグを立てる。2 回目以降は published_at を変えない。"""
        result = await session.execute(
            text(f"""
                UPDATE {self.table}
                SET published = :published,
                    published_at = COALESCE(published_at, :now)
                WHERE event_id = :event_id
            """),
            {
                "published": True,
                "now": to_iso(datetime.now(timezone.utc)),
                "event_id": event_id,
            },
        )
        return result.rowcount > 0

    async def increment_retry(self, session: AsyncSession, event_id: str) -> bool:
        """配信失敗を記録する。既に配信済みのイベントには何もしない。"""
        result = await session.execute(
            text(f"""
                UPDATE {self.table}
                SET retry_count = retry_count + 1
                WHERE event_id = :event_id AND published = :published
            """),
            {"event_id": event_id, "published": False},
        )
        return result.rowcount > 0

    async def purge_expired(self, session: AsyncSession, now: datetime | None = None) -> int:
        """保持期間を過ぎたイベントを配信状態に関係なく削除する。"""
        now = now or datetime.now(timezone.utc)
        result = await session.execute(
            text(f"DELETE FROM {self.table} WHERE expires_at < :now"),
            {"now": epoch(now)},
        )
        return result.rowcount

    # ── 読み取り ─────────────────────────────────

    async def list_unpublished(self, session: AsyncSession, limit: int = 25) -> list[OutboxEvent]:
        """
        未配信かつ retry_count が上限未満のイベントを古い順に返す。
        古いものを優先するだけで、全体の順序は保証しない。
        """
        result = await session.execute(
            text(f"""
                SELECT * FROM {self.table}
                WHERE published = :published AND retry_count < :max_retries
                ORDER BY created_at ASC, event_id ASC
                LIMIT :limit
            """),
            {"published": False, "max_retries": self.max_retries, "limit": limit},
        )
        return [_row_to_event(row) for row in result.fetchall()]

    async def list_failed(self, session: AsyncSession) -> list[OutboxEvent]:
        """retry_count が上限に達したイベント (オペレーター対応待ち)。"""
        result = await session.execute(
            text(f"""
                SELECT * FROM {self.table}
                WHERE published = :published AND retry_count >= :max_retries
                ORDER BY created_at ASC, event_id ASC
            """),
            {"published": False, "max_retries": self.max_retries},
        )
        return [_row_to_event(row) for row in result.fetchall()]

    async def get(self, session: AsyncSession, event_id: str) -> OutboxEvent | None:
        result = await session.execute(
            text(f"SELECT * FROM {self.table} WHERE event_id = :event_id"),
            {"event_id": event_id},
        )
        row = result.fetchone()
        return _row_to_event(row) if row else None

    async def list_for_aggregate(self, session: AsyncSession, aggregate_id: str) -> list[OutboxEvent]:
        result = await session.execute(
            text(f"""
                SELECT * FROM {self.table}
                WHERE aggregate_id = :aggregate_id
                ORDER BY created_at ASC, event_id ASC
            """),
            {"aggregate_id": aggregate_id},
        )
        return [_row_to_event(row) for row in result.fetchall()]
