"""
Order Service — クエリハンドラ (Read 側)

書き込み側と同じテーブルから読み、API 用の辞書に整形して返す。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderStatus
from .repository import OrderRepository
from .saga_state import SagaTracker


async def get_order(session: AsyncSession, repository: OrderRepository, order_id: str) -> dict | None:
    order = await repository.get(session, order_id)
    return order.to_dict() if order else None


async def list_orders(
    session: AsyncSession,
    repository: OrderRepository,
    customer_id: str | None = None,
    status: OrderStatus | None = None,
) -> list[dict]:
    """注文一覧。顧客 ID やステータスで絞り込める。"""
    orders = await repository.find(session, customer_id=customer_id, status=status)
    return [order.to_dict() for order in orders]


async def get_saga_for_order(session: AsyncSession, tracker: SagaTracker, order_id: str) -> dict | None:
    saga = await tracker.find_by_aggregate_id(session, order_id)
    return saga.model_dump(mode="json") if saga else None


async def list_sagas_requiring_compensation(session: AsyncSession, tracker: SagaTracker) -> list[dict]:
    return [saga.model_dump(mode="json") for saga in await tracker.list_requiring_compensation(session)]
