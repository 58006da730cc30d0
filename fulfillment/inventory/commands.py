"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の引き当て(Reserve)と解放(Release)を処理する。
Saga で重要: 引き当ての結果はイベントとして Outbox に書き、
注文サービスはそれを見て注文を確定またはキャンセルする。

reserve / release はコミットしない。冪等性ガードのクレームと同じ
トランザクションで呼び出し側 (InventoryEventHandlers) がコミットする。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import commit, to_iso
from ..errors import StorageConflict, ValidationError
from ..outbox import OutboxStore
from .events import InventoryReleased, InventoryReservationFailed, InventoryReserved, ReservedItem

logger = logging.getLogger(__name__)

RESERVED = "RESERVED"
RELEASED = "RELEASED"


def _merge(items: list[ReservedItem]) -> dict[str, int]:
    """同じ商品の明細を 1 行にまとめる。"""
    quantities: dict[str, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


async def stock_product(
    session: AsyncSession,
    product_id: str,
    product_name: str,
    quantity: int,
) -> dict:
    """商品の在庫数を登録・更新する。引き当て済みの数より少なくはできない。"""
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")

    result = await session.execute(
        text("SELECT reserved FROM inventory_stock WHERE product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    reserved = row.reserved if row else 0
    if quantity < reserved:
        raise ValidationError(
            f"Quantity {quantity} is below the {reserved} units already reserved for {product_id}"
        )

    now = to_iso(datetime.now(timezone.utc))
    await session.execute(
        text("""
            INSERT INTO inventory_stock (product_id, product_name, quantity, reserved, updated_at)
            VALUES (:id, :name, :qty, 0, :now)
            ON CONFLICT (product_id) DO UPDATE
            SET product_name = excluded.product_name,
                quantity = excluded.quantity,
                updated_at = excluded.updated_at
        """),
        {"id": product_id, "name": product_name, "qty": quantity, "now": now},
    )
    await commit(session)

    logger.info("Stocked %s (%s): quantity=%d", product_id, product_name, quantity)
    return {
        "product_id": product_id,
        "product_name": product_name,
        "quantity": quantity,
        "reserved": reserved,
        "available": quantity - reserved,
    }


async def reserve_inventory(
    session: AsyncSession,
    outbox: OutboxStore,
    order_id: str,
    items: list[ReservedItem],
) -> InventoryReserved | InventoryReservationFailed | None:
    """
    在庫引き当てコマンド

    1. 全明細の在庫数を確認
    2. すべて足りれば引き当てて InventoryReserved を記録
    3. 1 つでも足りなければ何も引き当てず InventoryReservationFailed を記録

    既に引き当て記録がある注文では何もせず None を返す。
    """
    now = datetime.now(timezone.utc)
    requested = _merge(items)

    existing = await session.execute(
        text("SELECT 1 FROM inventory_reservations WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    if existing.first() is not None:
        logger.warning("Order %s already has reservations, skipping", order_id)
        return None

    reason = None
    for product_id, quantity in requested.items():
        result = await session.execute(
            text("SELECT quantity, reserved FROM inventory_stock WHERE product_id = :id"),
            {"id": product_id},
        )
        row = result.fetchone()
        if not row:
            reason = f"Product {product_id} not found"
            break
        available = row.quantity - row.reserved
        if available < quantity:
            reason = (
                f"Insufficient stock for product {product_id}: "
                f"requested={quantity}, available={available}"
            )
            break

    if reason is not None:
        event = InventoryReservationFailed(order_id=order_id, reason=reason, occurred_at=now)
        await outbox.append(session, order_id, [event])
        logger.warning("Reservation failed for order %s: %s", order_id, reason)
        return event

    for product_id, quantity in requested.items():
        # 確認後に別の引き当てが割り込んだ場合は 0 行になる
        result = await session.execute(
            text("""
                UPDATE inventory_stock
                SET reserved = reserved + :qty, updated_at = :now
                WHERE product_id = :id AND quantity - reserved >= :qty
            """),
            {"qty": quantity, "now": to_iso(now), "id": product_id},
        )
        if result.rowcount == 0:
            raise StorageConflict(f"Stock for {product_id} changed while reserving order {order_id}")

        await session.execute(
            text("""
                INSERT INTO inventory_reservations
                    (order_id, product_id, quantity, status, created_at, updated_at)
                VALUES
                    (:order_id, :product_id, :qty, :status, :now, :now)
            """),
            {
                "order_id": order_id,
                "product_id": product_id,
                "qty": quantity,
                "status": RESERVED,
                "now": to_iso(now),
            },
        )

    event = InventoryReserved(
        order_id=order_id,
        items=[ReservedItem(product_id=p, quantity=q) for p, q in requested.items()],
        occurred_at=now,
    )
    await outbox.append(session, order_id, [event])
    logger.info("Reserved %d products for order %s", len(requested), order_id)
    return event


async def release_inventory(
    session: AsyncSession,
    outbox: OutboxStore,
    order_id: str,
) -> InventoryReleased | None:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    注文がキャンセルされた場合に引き当て済みの在庫を戻す。
    引き当てが無い (失敗していた) 注文では何もしない。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            SELECT product_id, quantity FROM inventory_reservations
            WHERE order_id = :order_id AND status = :status
            ORDER BY product_id
        """),
        {"order_id": order_id, "status": RESERVED},
    )
    reservations = result.fetchall()
    if not reservations:
        logger.info("No reservations to release for order %s", order_id)
        return None

    for row in reservations:
        await session.execute(
            text("""
                UPDATE inventory_stock
                SET reserved = reserved - :qty, updated_at = :now
                WHERE product_id = :id
            """),
            {"qty": row.quantity, "now": to_iso(now), "id": row.product_id},
        )
    await session.execute(
        text("""
            UPDATE inventory_reservations
            SET status = :released, updated_at = :now
            WHERE order_id = :order_id AND status = :reserved
        """),
        {"released": RELEASED, "reserved": RESERVED, "now": to_iso(now), "order_id": order_id},
    )

    event = InventoryReleased(
        order_id=order_id,
        items=[ReservedItem(product_id=r.product_id, quantity=r.quantity) for r in reservations],
        occurred_at=now,
    )
    await outbox.append(session, order_id, [event])
    logger.info("Released %d reservations for order %s", len(reservations), order_id)
    return event
