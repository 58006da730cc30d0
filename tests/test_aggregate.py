from decimal import Decimal

import pytest

from fulfillment.errors import InvalidTransition, ValidationError
from fulfillment.order.aggregate import (
    TRANSITIONS,
    Money,
    Order,
    OrderItem,
    OrderStatus,
    can_transition,
    ensure_transition,
)

from support import two_items, usd

ALLOWED = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
    (OrderStatus.PROCESSING, OrderStatus.COMPLETED),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
}

ALL_PAIRS = [(a, b) for a in OrderStatus for b in OrderStatus]


@pytest.mark.parametrize("current,target", ALL_PAIRS)
def test_can_transition_matches_table(current, target):
    assert can_transition(current, target) == ((current, target) in ALLOWED)


@pytest.mark.parametrize("current,target", [p for p in ALL_PAIRS if p not in ALLOWED])
def test_illegal_transitions_raise(current, target):
    with pytest.raises(InvalidTransition) as exc:
        ensure_transition(current, target)
    assert exc.value.current == current.value
    assert exc.value.target == target.value
    assert not exc.value.retryable


def test_terminal_states_have_no_exits():
    assert OrderStatus.COMPLETED.is_final
    assert OrderStatus.CANCELLED.is_final
    assert not TRANSITIONS[OrderStatus.COMPLETED]
    assert not OrderStatus.PENDING.is_final


def test_create_emits_created_event_with_total():
    order = Order.create("cust-1", two_items())

    assert order.status is OrderStatus.PENDING
    assert order.version == 0
    assert order.total_amount == Money(Decimal("150.00"), "USD")
    [event] = order.pending_events
    assert event.event_type == "order.created"
    assert event.order_id == order.id
    assert event.customer_id == "cust-1"
    assert event.total_amount == Decimal("150.00")
    assert event.currency == "USD"
    assert len(event.items) == 2


def test_create_requires_items_and_customer():
    with pytest.raises(ValidationError):
        Order.create("cust-1", [])
    with pytest.raises(ValidationError):
        Order.create("", two_items())


def test_create_rejects_mixed_currencies():
    items = [
        OrderItem.create("a", "A", 1, usd("1.00")),
        OrderItem.create("b", "B", 1, Money.create("1.00", "EUR")),
    ]
    with pytest.raises(ValidationError):
        Order.create("cust-1", items)


def test_lifecycle_appends_one_event_per_transition():
    order = Order.create("cust-1", two_items())
    order.clear_events()
    created_at = order.updated_at

    order.confirm()
    order.start_processing()
    order.complete()

    assert order.status is OrderStatus.COMPLETED
    assert [e.event_type for e in order.pending_events] == [
        "order.confirmed",
        "order.processing",
        "order.completed",
    ]
    assert order.updated_at >= created_at


def test_confirm_twice_is_invalid():
    order = Order.create("cust-1", two_items())
    order.confirm()
    with pytest.raises(InvalidTransition):
        order.confirm()


def test_cancel_records_reason():
    order = Order.create("cust-1", two_items())
    order.clear_events()

    order.cancel("out of stock")

    assert order.status is OrderStatus.CANCELLED
    assert order.cancellation_reason == "out of stock"
    [event] = order.pending_events
    assert event.event_type == "order.cancelled"
    assert event.reason == "out of stock"
    assert event.total_amount == Decimal("150.00")


@pytest.mark.parametrize("finish", ["cancel", "complete"])
def test_cancel_fails_on_terminal_order(finish):
    order = Order.create("cust-1", two_items())
    if finish == "cancel":
        order.cancel("first")
    else:
        order.confirm()
        order.start_processing()
        order.complete()

    with pytest.raises(InvalidTransition):
        order.cancel("again")


def test_add_and_remove_items_recompute_total():
    order = Order.create("cust-1", two_items())
    order.clear_events()

    order.add_item(OrderItem.create("prod-3", "Doohickey", 3, usd("10.00")))
    assert order.total_amount.amount == Decimal("180.00")

    order.remove_item("prod-1")
    assert order.total_amount.amount == Decimal("80.00")
    assert [i.product_id for i in order.items] == ["prod-2", "prod-3"]

    added, removed = order.pending_events
    assert added.event_type == "order.item_added"
    assert added.total_amount == Decimal("180.00")
    assert removed.event_type == "order.item_removed"
    assert removed.product_id == "prod-1"


def test_cannot_remove_last_item():
    order = Order.create("cust-1", [OrderItem.create("p", "P", 1, usd("5.00"))])
    with pytest.raises(ValidationError):
        order.remove_item("p")


def test_remove_unknown_item_is_rejected():
    order = Order.create("cust-1", two_items())
    with pytest.raises(ValidationError):
        order.remove_item("missing")


def test_items_can_only_change_while_pending():
    order = Order.create("cust-1", two_items())
    order.confirm()
    with pytest.raises(InvalidTransition):
        order.add_item(OrderItem.create("prod-3", "Doohickey", 1, usd("1.00")))
    with pytest.raises(InvalidTransition):
        order.remove_item("prod-1")


def test_money_validation():
    assert Money.create("12.5", "usd").currency == "USD"
    with pytest.raises(ValidationError):
        Money.create("-1", "USD")
    with pytest.raises(ValidationError):
        Money.create("1", "US")
    with pytest.raises(ValidationError):
        Money.create("abc", "USD")
    with pytest.raises(ValidationError):
        usd("1").add(Money.create("1", "EUR"))


@pytest.mark.parametrize("amount", ["NaN", "sNaN", "Infinity", "-Infinity"])
def test_money_rejects_non_finite_amounts(amount):
    with pytest.raises(ValidationError):
        Money.create(amount, "USD")


def test_order_item_validation():
    with pytest.raises(ValidationError):
        OrderItem.create("p", "P", 0, usd("1"))
    with pytest.raises(ValidationError):
        OrderItem.create("", "P", 1, usd("1"))
    assert OrderItem.create("p", "P", 3, usd("2.50")).line_total == usd("7.50")


def test_row_roundtrip_restores_state_without_events():
    order = Order.create("cust-1", two_items())
    order.confirm()
    row = type("Row", (), {**order.to_row(), "version": 2})()

    restored = Order.reconstitute(row)

    assert restored.id == order.id
    assert restored.status is OrderStatus.CONFIRMED
    assert restored.total_amount == order.total_amount
    assert restored.version == 2
    assert restored.pending_events == []
