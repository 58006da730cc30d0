"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _product(row) -> dict:
    return {
        "product_id": row.product_id,
        "product_name": row.product_name,
        "quantity": row.quantity,
        "reserved": row.reserved,
        "available": row.quantity - row.reserved,
        "updated_at": row.updated_at,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM inventory_stock WHERE product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    return _product(row) if row else None


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM inventory_stock ORDER BY product_name"),
    )
    return [_product(row) for row in result.fetchall()]


async def list_reservations(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM inventory_reservations
            WHERE order_id = :order_id
            ORDER BY product_id
        """),
        {"order_id": order_id},
    )
    return [
        {
            "order_id": row.order_id,
            "product_id": row.product_id,
            "quantity": row.quantity,
            "status": row.status,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
        for row in result.fetchall()
    ]
