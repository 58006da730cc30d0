"""
Inventory Service — イベント定義

在庫サービスは Saga の参加者。order.created を受けて引き当てを試み、
結果を inventory.reserved / inventory.reservation.failed として発行する。
order.cancelled を受けたら引き当てを解放する (補償)。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class ReservedItem(BaseModel):
    product_id: str
    quantity: int


# ── 発行イベント ─────────────────────────────────


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    event_type: Literal["inventory.reserved"] = "inventory.reserved"
    order_id: str
    items: list[ReservedItem]
    occurred_at: datetime


class InventoryReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足など）"""
    event_type: Literal["inventory.reservation.failed"] = "inventory.reservation.failed"
    order_id: str
    reason: str
    occurred_at: datetime


class InventoryReleased(BaseModel):
    """在庫の引き当てが解放された（補償トランザクション）"""
    event_type: Literal["inventory.released"] = "inventory.released"
    order_id: str
    items: list[ReservedItem]
    occurred_at: datetime


# ── 受信イベント (注文サービスから) ──────────────
# 使うフィールドだけを読む。それ以外は無視する。


class OrderCreated(BaseModel):
    order_id: str
    customer_id: str
    items: list[ReservedItem]


class OrderCancelled(BaseModel):
    order_id: str
    reason: str = ""
