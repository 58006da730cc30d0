"""
Order Service — 注文リポジトリ

集約の読み込みだけを担当する。書き込みは OutboxStore.save_with_events()
が集約の行とイベントを同じトランザクションで保存する。
"""

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..idempotency import IdempotencyGuard
from ..outbox import OutboxStore
from ..settings import Settings
from .aggregate import Order, OrderStatus
from .saga_state import SagaTracker


class OrderRepository:
    def __init__(self, table: str = "orders") -> None:
        self.table = table

    async def get(self, session: AsyncSession, order_id: str) -> Order | None:
        result = await session.execute(
            text(f"SELECT * FROM {self.table} WHERE id = :id"),
            {"id": order_id},
        )
        row = result.fetchone()
        return Order.reconstitute(row) if row else None

    async def find(
        self,
        session: AsyncSession,
        customer_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int = 100,
    ) -> list[Order]:
        conditions = []
        params: dict = {"limit": limit}
        if customer_id is not None:
            conditions.append("customer_id = :customer_id")
            params["customer_id"] = customer_id
        if status is not None:
            conditions.append("status = :status")
            params["status"] = status.value
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        result = await session.execute(
            text(f"SELECT * FROM {self.table} {where} ORDER BY created_at DESC LIMIT :limit"),
            params,
        )
        return [Order.reconstitute(row) for row in result.fetchall()]


@dataclass
class OrderStores:
    """注文サービスが 1 つのトランザクションで扱うストア一式。"""

    orders: OrderRepository
    outbox: OutboxStore
    sagas: SagaTracker
    guard: IdempotencyGuard

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrderStores":
        return cls(
            orders=OrderRepository(),
            outbox=OutboxStore(
                table="order_outbox",
                aggregate_table="orders",
                max_retries=settings.outbox_max_retries,
                retention=timedelta(days=settings.outbox_retention_days),
            ),
            sagas=SagaTracker(),
            guard=IdempotencyGuard(
                table="order_idempotency",
                ttl=timedelta(days=settings.idempotency_ttl_days),
            ),
        )
