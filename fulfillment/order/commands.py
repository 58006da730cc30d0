"""
Order Service — コマンドハンドラ (Write 側)

コマンドは状態を変更する操作。どのコマンドも同じ流れをたどる:

  1. 集約を読み込む (新規作成なら Order.create)
  2. 集約の業務操作を呼ぶ → ドメインイベントが積まれる
  3. OutboxStore.save_with_events() で行とイベントを書き込む
  4. コミット

バスへの発行はここでは行わない。コミットされたイベントは
EventRelay が非同期に配信する。

コミット時に StorageConflict が起きた場合は、集約を読み直して
ユースケースを最初からやり直す (run_with_retry)。
"""

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..db import commit
from ..errors import StorageConflict
from .aggregate import Order, OrderItem
from .repository import OrderStores
from .saga_state import SagaStep

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_retry(
    session_factory: sessionmaker,
    use_case: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = 3,
) -> T:
    """use_case を新しいセッションで実行し、StorageConflict なら最初からやり直す。"""
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            try:
                return await use_case(session)
            except StorageConflict as e:
                if attempt == attempts:
                    raise
                logger.warning("Storage conflict (attempt %d/%d), retrying: %s", attempt, attempts, e)
    raise AssertionError("unreachable")


async def create_order(
    session: AsyncSession,
    stores: OrderStores,
    customer_id: str,
    items: list[OrderItem],
    order_id: str | None = None,
) -> Order:
    """
    注文作成コマンド

    注文の行、order.created イベント、Saga の記録を
    1 つのトランザクションでコミットする。
    """
    order = Order.create(customer_id, items, order_id)
    saga = await stores.sagas.start(session, order.id)
    await stores.outbox.save_with_events(session, order)
    await commit(session)

    logger.info(
        "Created order %s for customer %s (%s, saga %s)",
        order.id, customer_id, order.total_amount, saga.saga_id,
    )
    return order


async def add_item(
    session: AsyncSession,
    stores: OrderStores,
    order_id: str,
    item: OrderItem,
) -> Order | None:
    order = await stores.orders.get(session, order_id)
    if order is None:
        return None
    order.add_item(item)
    await stores.outbox.save_with_events(session, order)
    await commit(session)
    logger.info("Added %s x%d to order %s", item.product_id, item.quantity, order_id)
    return order


async def remove_item(
    session: AsyncSession,
    stores: OrderStores,
    order_id: str,
    product_id: str,
) -> Order | None:
    order = await stores.orders.get(session, order_id)
    if order is None:
        return None
    order.remove_item(product_id)
    await stores.outbox.save_with_events(session, order)
    await commit(session)
    logger.info("Removed %s from order %s", product_id, order_id)
    return order


async def cancel_order(
    session: AsyncSession,
    stores: OrderStores,
    order_id: str,
    reason: str,
) -> Order | None:
    """
    注文キャンセルコマンド (顧客・オペレーターからの要求)

    Saga がまだ終端に達していなければ、補償として記録してから閉じる。
    order.cancelled を受けた在庫サービスが引き当てを解放する。
    """
    order = await stores.orders.get(session, order_id)
    if order is None:
        return None
    order.cancel(reason)
    await stores.outbox.save_with_events(session, order)

    saga = await stores.sagas.find_by_aggregate_id(session, order_id)
    if saga is not None and not saga.is_terminal:
        await stores.sagas.request_compensation(session, saga.saga_id, reason, SagaStep.COMPENSATING)
        await stores.sagas.mark_compensated(session, saga.saga_id)

    await commit(session)
    logger.info("Cancelled order %s: %s", order_id, reason)
    return order
