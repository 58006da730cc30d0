"""
Order Service — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

クラス階層は作らず、event_type をタグにした判別共用体にする。
  OrderEvent    : この集約が発行するイベント (Outbox 経由でバスへ)
  InboundEvent  : Saga 参加サービスから届くイベント
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class OrderLine(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal


# ── 発行イベント ─────────────────────────────────


class OrderCreated(BaseModel):
    """注文が作成された → 在庫サービスが引き当てを行う"""
    event_type: Literal["order.created"] = "order.created"
    order_id: str
    customer_id: str
    items: list[OrderLine]
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderConfirmed(BaseModel):
    """注文が確定された（在庫引き当て成功）"""
    event_type: Literal["order.confirmed"] = "order.confirmed"
    order_id: str
    customer_id: str
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderProcessing(BaseModel):
    """決済処理が始まった"""
    event_type: Literal["order.processing"] = "order.processing"
    order_id: str
    customer_id: str
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderCompleted(BaseModel):
    """決済が完了し注文が完了した"""
    event_type: Literal["order.completed"] = "order.completed"
    order_id: str
    customer_id: str
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（補償トランザクションを含む）"""
    event_type: Literal["order.cancelled"] = "order.cancelled"
    order_id: str
    customer_id: str
    reason: str
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderItemAdded(BaseModel):
    event_type: Literal["order.item_added"] = "order.item_added"
    order_id: str
    customer_id: str
    item: OrderLine
    total_amount: Decimal
    currency: str
    occurred_at: datetime


class OrderItemRemoved(BaseModel):
    event_type: Literal["order.item_removed"] = "order.item_removed"
    order_id: str
    customer_id: str
    product_id: str
    total_amount: Decimal
    currency: str
    occurred_at: datetime


OrderEvent = Annotated[
    Union[
        OrderCreated,
        OrderConfirmed,
        OrderProcessing,
        OrderCompleted,
        OrderCancelled,
        OrderItemAdded,
        OrderItemRemoved,
    ],
    Field(discriminator="event_type"),
]


# ── 受信イベント (Saga 参加サービスから) ─────────


class ReservedItem(BaseModel):
    product_id: str
    quantity: int


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    event_type: Literal["inventory.reserved"] = "inventory.reserved"
    order_id: str
    items: list[ReservedItem] = []
    occurred_at: datetime | None = None


class InventoryReservationFailed(BaseModel):
    """在庫引き当てが失敗した"""
    event_type: Literal["inventory.reservation.failed"] = "inventory.reservation.failed"
    order_id: str
    reason: str
    occurred_at: datetime | None = None


class PaymentProcessing(BaseModel):
    event_type: Literal["payment.processing"] = "payment.processing"
    order_id: str
    payment_id: str | None = None
    occurred_at: datetime | None = None


class PaymentCompleted(BaseModel):
    event_type: Literal["payment.completed"] = "payment.completed"
    order_id: str
    payment_id: str | None = None
    occurred_at: datetime | None = None


InboundEvent = Annotated[
    Union[InventoryReserved, InventoryReservationFailed, PaymentProcessing, PaymentCompleted],
    Field(discriminator="event_type"),
]

_order_events = TypeAdapter(OrderEvent)
_inbound_events = TypeAdapter(InboundEvent)

INBOUND_EVENT_TYPES = (
    "inventory.reserved",
    "inventory.reservation.failed",
    "payment.processing",
    "payment.completed",
)


def parse_order_event(data: dict) -> OrderEvent:
    return _order_events.validate_python(data)


def parse_inbound(event_type: str, payload: dict) -> InboundEvent:
    """
    受信ペイロードをイベントモデルに変換する。
    外部サービスのペイロードには event_type が無いことがあるので
    エンベロープの event_type で上書きする。
    """
    return _inbound_events.validate_python({**payload, "event_type": event_type})
