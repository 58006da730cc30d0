"""
Fulfillment — イベントリレー (Outbox → バス)

一定間隔 (既定 30 秒) または要求に応じて実行する:
  1. 未配信イベントを上限件数まで取得
  2. 1 件ずつバスに発行
     ├─ 成功 → published に更新
     └─ 失敗 → retry_count を増やして次のイベントへ (バッチは止めない)
  3. retry_count が上限に達したイベントを運用アラートとして返す

「バスが受理」から「published に更新」までの間にクラッシュすると
次回同じイベントが再送される (at-least-once)。受信側は
冪等性ガードでこれを吸収する。複数インスタンスが同時に動いても
mark_published は冪等なので安全。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .bus import Envelope, EventBus
from .db import commit
from .errors import DeliveryFailure
from .idempotency import IdempotencyGuard
from .outbox import OutboxEvent, OutboxStore

logger = logging.getLogger(__name__)


@dataclass
class RelayReport:
    published: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    escalated: list[OutboxEvent] = field(default_factory=list)

    @property
    def has_escalations(self) -> bool:
        return bool(self.escalated)


class EventRelay:
    def __init__(
        self,
        session_factory: sessionmaker,
        outbox: OutboxStore,
        bus: EventBus,
        source: str,
        batch_size: int = 25,
        guard: IdempotencyGuard | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.outbox = outbox
        self.bus = bus
        self.source = source
        self.batch_size = batch_size
        self.guard = guard

    async def run_once(self) -> RelayReport:
        report = RelayReport()

        async with self.session_factory() as session:
            events = await self.outbox.list_unpublished(session, self.batch_size)

        if events:
            logger.info("Relaying %d unpublished events from %s", len(events), self.outbox.table)

        for event in events:
            try:
                await self.bus.publish(Envelope.from_outbox(event, self.source))
            except DeliveryFailure as e:
                logger.warning(
                    "Failed to publish event %s (%s), attempt %d: %s",
                    event.event_id, event.event_type, event.retry_count + 1, e,
                )
                await self._record_failure(event)
                report.failed.append(event.event_id)
                continue
            except Exception:
                logger.exception(
                    "Unexpected error publishing event %s (%s), attempt %d",
                    event.event_id, event.event_type, event.retry_count + 1,
                )
                await self._record_failure(event)
                report.failed.append(event.event_id)
                continue

            await self._mark_published(event)
            report.published.append(event.event_id)

        async with self.session_factory() as session:
            report.escalated = await self.outbox.list_failed(session)

        if report.escalated:
            logger.error(
                "%d events exceeded %d delivery attempts and need manual intervention: %s",
                len(report.escalated),
                self.outbox.max_retries,
                ", ".join(e.event_id for e in report.escalated),
            )
        return report

    async def _mark_published(self, event: OutboxEvent) -> None:
        # ここで失敗しても次回再送されるだけなので、バッチは続ける
        try:
            async with self.session_factory() as session:
                await self.outbox.mark_published(session, event.event_id)
                await commit(session)
        except SQLAlchemyError:
            logger.exception("Could not mark event %s as published", event.event_id)

    async def _record_failure(self, event: OutboxEvent) -> None:
        try:
            async with self.session_factory() as session:
                await self.outbox.increment_retry(session, event.event_id)
                await commit(session)
        except SQLAlchemyError:
            logger.exception("Could not record delivery failure for event %s", event.event_id)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """TTL を過ぎた Outbox / 冪等性レコードを削除する。"""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as session:
            removed = await self.outbox.purge_expired(session, now)
            if self.guard is not None:
                removed += await self.guard.purge_expired(session, now)
            await commit(session)
        if removed:
            logger.info("Purged %d expired rows", removed)
        return removed


async def run_relay_loop(
    relay: EventRelay,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとにリレーを実行する。"""
    logger.info("Outbox relay started for %s (every %.0fs)", relay.outbox.table, interval)
    while not shutdown_event.is_set():
        try:
            await relay.run_once()
            await relay.purge_expired()
        except Exception:
            logger.exception("Outbox relay run failed")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Outbox relay stopped for %s", relay.outbox.table)
