"""
Order Service — 注文集約 (Order Aggregate)

状態遷移は TRANSITIONS の表で一元管理する。
集約を変更できるのは名前付きの業務操作だけで、
成功した操作はそれぞれ 1 件のドメインイベントを pending_events に積む。
イベントは OutboxStore.save_with_events() に渡した時点で取り除かれる。

    PENDING ──▶ CONFIRMED ──▶ PROCESSING ──▶ COMPLETED
       │            │              │
       └────────────┴──────────────┴──────▶ CANCELLED
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import uuid4

from ..db import from_iso, to_iso
from ..errors import InvalidTransition, ValidationError
from .events import (
    OrderCancelled,
    OrderCompleted,
    OrderConfirmed,
    OrderCreated,
    OrderEvent,
    OrderItemAdded,
    OrderItemRemoved,
    OrderLine,
    OrderProcessing,
)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_final(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


# ── 値オブジェクト ───────────────────────────────


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str = "USD"

    @classmethod
    def create(cls, amount: Any, currency: str = "USD") -> "Money":
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid money amount: {amount!r}") from e
        if not value.is_finite():
            raise ValidationError(f"Money amount must be finite: {amount!r}")
        if value < 0:
            raise ValidationError("Money amount cannot be negative")
        if not currency or len(currency) != 3:
            raise ValidationError("Currency must be a 3-letter ISO code")
        return cls(value, currency.upper())

    def add(self, other: "Money") -> "Money":
        if self.currency != other.currency:
            raise ValidationError(
                f"Cannot add different currencies: {self.currency} and {other.currency}"
            )
        return Money(self.amount + other.amount, self.currency)

    def multiply(self, factor: int) -> "Money":
        return Money.create(self.amount * factor, self.currency)

    def __str__(self) -> str:
        return f"{self.currency} {self.amount:.2f}"


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    product_name: str
    quantity: int
    unit_price: Money

    @classmethod
    def create(cls, product_id: str, product_name: str, quantity: int, unit_price: Money) -> "OrderItem":
        if not product_id or not product_name:
            raise ValidationError("Product ID and name are required")
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        return cls(product_id, product_name, quantity, unit_price)

    @property
    def line_total(self) -> Money:
        return self.unit_price.multiply(self.quantity)

    def to_line(self) -> OrderLine:
        return OrderLine(
            product_id=self.product_id,
            product_name=self.product_name,
            quantity=self.quantity,
            unit_price=self.unit_price.amount,
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price.amount),
            "currency": self.unit_price.currency,
            "line_total": str(self.line_total.amount),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderItem":
        return cls.create(
            data["product_id"],
            data["product_name"],
            data["quantity"],
            Money.create(data["unit_price"], data["currency"]),
        )


def _calculate_total(items: list[OrderItem]) -> Money:
    total = Money(Decimal("0"), items[0].unit_price.currency)
    for item in items:
        total = total.add(item.line_total)
    return total


# ── 集約 ─────────────────────────────────────────


class Order:
    """
    注文集約。

    total_amount は常に明細行の合計から算出するので、
    明細と合計がずれることはない。
    """

    def __init__(
        self,
        id: str,
        customer_id: str,
        items: list[OrderItem],
        status: OrderStatus,
        created_at: datetime,
        updated_at: datetime,
        cancellation_reason: str | None = None,
        version: int = 0,
    ) -> None:
        self.id = id
        self.customer_id = customer_id
        self._items = list(items)
        self.status = status
        self.created_at = created_at
        self.updated_at = updated_at
        self.cancellation_reason = cancellation_reason
        self.version = version
        self._events: list[OrderEvent] = []

    @classmethod
    def create(cls, customer_id: str, items: list[OrderItem], order_id: str | None = None) -> "Order":
        """新しい注文を作る唯一の方法。"""
        if not customer_id:
            raise ValidationError("Customer ID is required")
        if not items:
            raise ValidationError("Order must have at least one item")
        _calculate_total(items)  # 通貨の混在を拒否する

        now = datetime.now(timezone.utc)
        order = cls(
            id=order_id or str(uuid4()),
            customer_id=customer_id,
            items=items,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        total = order.total_amount
        order._record(
            OrderCreated(
                order_id=order.id,
                customer_id=customer_id,
                items=[item.to_line() for item in items],
                total_amount=total.amount,
                currency=total.currency,
                occurred_at=now,
            )
        )
        return order

    @classmethod
    def reconstitute(cls, row: Any) -> "Order":
        """永続化された行から集約を復元する。イベントは発生しない。"""
        items = json.loads(row.items) if isinstance(row.items, str) else row.items
        return cls(
            id=row.id,
            customer_id=row.customer_id,
            items=[OrderItem.from_dict(i) for i in items],
            status=OrderStatus(row.status),
            created_at=from_iso(row.created_at),
            updated_at=from_iso(row.updated_at),
            cancellation_reason=row.cancellation_reason,
            version=row.version,
        )

    # ── 参照 ─────────────────────────────────────

    @property
    def items(self) -> list[OrderItem]:
        return list(self._items)

    @property
    def total_amount(self) -> Money:
        return _calculate_total(self._items)

    @property
    def pending_events(self) -> list[OrderEvent]:
        return list(self._events)

    def clear_events(self) -> None:
        self._events.clear()

    # ── 状態遷移 ─────────────────────────────────

    def confirm(self) -> None:
        now = self._transition(OrderStatus.CONFIRMED)
        self._record(OrderConfirmed(**self._summary(), occurred_at=now))

    def start_processing(self) -> None:
        now = self._transition(OrderStatus.PROCESSING)
        self._record(OrderProcessing(**self._summary(), occurred_at=now))

    def complete(self) -> None:
        now = self._transition(OrderStatus.COMPLETED)
        self._record(OrderCompleted(**self._summary(), occurred_at=now))

    def cancel(self, reason: str) -> None:
        if self.status.is_final:
            raise InvalidTransition(
                self.status.value,
                OrderStatus.CANCELLED.value,
                "Cannot cancel a completed or already cancelled order",
            )
        now = self._transition(OrderStatus.CANCELLED)
        self.cancellation_reason = reason
        self._record(OrderCancelled(**self._summary(), reason=reason, occurred_at=now))

    # ── 明細の変更 (PENDING の間だけ) ─────────────

    def add_item(self, item: OrderItem) -> None:
        self._ensure_pending("Can only add items to pending orders")
        items = [*self._items, item]
        total = _calculate_total(items)
        self._items = items
        self.updated_at = datetime.now(timezone.utc)
        self._record(
            OrderItemAdded(
                order_id=self.id,
                customer_id=self.customer_id,
                item=item.to_line(),
                total_amount=total.amount,
                currency=total.currency,
                occurred_at=self.updated_at,
            )
        )

    def remove_item(self, product_id: str) -> None:
        self._ensure_pending("Can only remove items from pending orders")
        remaining = [i for i in self._items if i.product_id != product_id]
        if len(remaining) == len(self._items):
            raise ValidationError(f"Product {product_id} is not part of order {self.id}")
        if not remaining:
            raise ValidationError("Order must have at least one item")

        self._items = remaining
        self.updated_at = datetime.now(timezone.utc)
        self._record(
            OrderItemRemoved(
                **self._summary(), product_id=product_id, occurred_at=self.updated_at
            )
        )

    # ── 内部 ─────────────────────────────────────

    def _transition(self, target: OrderStatus) -> datetime:
        ensure_transition(self.status, target)
        self.status = target
        self.updated_at = datetime.now(timezone.utc)
        return self.updated_at

    def _ensure_pending(self, message: str) -> None:
        if self.status is not OrderStatus.PENDING:
            raise InvalidTransition(self.status.value, OrderStatus.PENDING.value, message)

    def _summary(self) -> dict:
        total = self.total_amount
        return {
            "order_id": self.id,
            "customer_id": self.customer_id,
            "total_amount": total.amount,
            "currency": total.currency,
        }

    def _record(self, event: OrderEvent) -> None:
        self._events.append(event)

    # ── シリアライズ ─────────────────────────────

    def to_row(self) -> dict:
        total = self.total_amount
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "items": json.dumps([i.to_dict() for i in self._items]),
            "total_amount": str(total.amount),
            "currency": total.currency,
            "status": self.status.value,
            "cancellation_reason": self.cancellation_reason,
            "version": self.version,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def to_dict(self) -> dict:
        total = self.total_amount
        return {
            "order_id": self.id,
            "customer_id": self.customer_id,
            "items": [i.to_dict() for i in self._items],
            "total_amount": str(total.amount),
            "currency": total.currency,
            "status": self.status.value,
            "cancellation_reason": self.cancellation_reason,
            "version": self.version,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
