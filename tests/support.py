"""テスト用のバスダブルとデータ生成ヘルパー"""

from decimal import Decimal
from uuid import uuid4

from fulfillment.bus import Envelope
from fulfillment.errors import DeliveryFailure
from fulfillment.order.aggregate import Money, OrderItem


class InMemoryBus:
    def __init__(self) -> None:
        self.published: list[Envelope] = []
        self.fail_ids: set[str] = set()
        self.crash_ids: set[str] = set()

    async def publish(self, envelope: Envelope) -> None:
        if envelope.event_id in self.fail_ids:
            raise DeliveryFailure(f"bus rejected {envelope.event_id}")
        if envelope.event_id in self.crash_ids:
            raise RuntimeError("connection reset")
        self.published.append(envelope)

    def of_type(self, event_type: str) -> list[Envelope]:
        return [e for e in self.published if e.event_type == event_type]


def make_envelope(event_type: str, payload: dict, event_id: str | None = None, source: str = "test") -> Envelope:
    return Envelope(
        event_id=event_id or str(uuid4()),
        event_type=event_type,
        aggregate_id=payload.get("order_id", ""),
        occurred_at="2026-01-01T00:00:00+00:00",
        source=source,
        payload=payload,
    )


def usd(amount: str) -> Money:
    return Money.create(Decimal(amount), "USD")


def two_items() -> list[OrderItem]:
    """合計 150.00 USD になる 2 明細"""
    return [
        OrderItem.create("prod-1", "Widget", 2, usd("50.00")),
        OrderItem.create("prod-2", "Gadget", 1, usd("50.00")),
    ]
