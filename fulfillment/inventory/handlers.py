"""
Inventory Service — 注文イベントハンドラ

  order.created    → 在庫を引き当て、結果イベントを Outbox に記録
  order.cancelled  → 引き当てを解放 (補償)

クレーム・在庫の更新・結果イベントは 1 つのトランザクションでコミットする。
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import sessionmaker

from ..bus import Envelope
from ..db import commit
from ..errors import HandleResult, ValidationError
from ..idempotency import IdempotencyGuard
from ..outbox import OutboxStore
from ..settings import Settings
from . import commands
from .events import OrderCancelled, OrderCreated

logger = logging.getLogger(__name__)


@dataclass
class InventoryStores:
    outbox: OutboxStore
    guard: IdempotencyGuard

    @classmethod
    def from_settings(cls, settings: Settings) -> "InventoryStores":
        return cls(
            outbox=OutboxStore(
                table="inventory_outbox",
                aggregate_table=None,
                max_retries=settings.outbox_max_retries,
                retention=timedelta(days=settings.outbox_retention_days),
            ),
            guard=IdempotencyGuard(
                table="inventory_idempotency",
                ttl=timedelta(days=settings.idempotency_ttl_days),
            ),
        )


class InventoryEventHandlers:
    def __init__(self, session_factory: sessionmaker, stores: InventoryStores) -> None:
        self.session_factory = session_factory
        self.stores = stores

    async def dispatch(self, envelope: Envelope) -> HandleResult:
        try:
            if envelope.event_type == "order.created":
                return await self.on_order_created(envelope.event_id, OrderCreated(**envelope.payload))
            if envelope.event_type == "order.cancelled":
                return await self.on_order_cancelled(envelope.event_id, OrderCancelled(**envelope.payload))
        except PayloadError as e:
            raise ValidationError(f"Invalid {envelope.event_type} payload: {e}") from e
        return HandleResult.IGNORED

    async def on_order_created(self, event_id: str, event: OrderCreated) -> HandleResult:
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, "order.created", event.order_id):
                return HandleResult.DUPLICATE
            outcome = await commands.reserve_inventory(
                session, self.stores.outbox, event.order_id, event.items
            )
            await commit(session)
        return HandleResult.PROCESSED if outcome is not None else HandleResult.DUPLICATE

    async def on_order_cancelled(self, event_id: str, event: OrderCancelled) -> HandleResult:
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, "order.cancelled", event.order_id):
                return HandleResult.DUPLICATE
            logger.info("Order %s cancelled (%s), releasing inventory", event.order_id, event.reason)
            await commands.release_inventory(session, self.stores.outbox, event.order_id)
            await commit(session)
        return HandleResult.PROCESSED
