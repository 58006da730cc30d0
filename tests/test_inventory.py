import pytest

from fulfillment.errors import HandleResult, ValidationError
from fulfillment.inventory import commands, queries

from support import make_envelope


async def _stock(session_factory, product_id: str, quantity: int):
    async with session_factory() as session:
        return await commands.stock_product(session, product_id, f"Product {product_id}", quantity)


def _created(order_id: str, *items: tuple[str, int]):
    return make_envelope(
        "order.created",
        {
            "order_id": order_id,
            "customer_id": "cust-1",
            "items": [{"product_id": p, "quantity": q} for p, q in items],
        },
    )


async def _outbox_types(session_factory, inventory_stores, order_id):
    async with session_factory() as session:
        return [e.event_type for e in await inventory_stores.outbox.list_for_aggregate(session, order_id)]


async def test_reservation_holds_stock(session_factory, inventory_handlers, inventory_stores):
    await _stock(session_factory, "p1", 5)
    await _stock(session_factory, "p2", 5)

    result = await inventory_handlers.dispatch(_created("order-1", ("p1", 2), ("p2", 1), ("p1", 1)))

    assert result is HandleResult.PROCESSED
    async with session_factory() as session:
        p1 = await queries.get_product(session, "p1")
        reservations = await queries.list_reservations(session, "order-1")
    assert p1["reserved"] == 3
    assert p1["available"] == 2
    assert {(r["product_id"], r["quantity"]) for r in reservations} == {("p1", 3), ("p2", 1)}
    assert await _outbox_types(session_factory, inventory_stores, "order-1") == ["inventory.reserved"]


async def test_insufficient_stock_reserves_nothing(session_factory, inventory_handlers, inventory_stores):
    await _stock(session_factory, "p1", 5)
    await _stock(session_factory, "p2", 0)

    await inventory_handlers.dispatch(_created("order-1", ("p1", 2), ("p2", 1)))

    async with session_factory() as session:
        assert (await queries.get_product(session, "p1"))["reserved"] == 0
        assert await queries.list_reservations(session, "order-1") == []
        [event] = await inventory_stores.outbox.list_for_aggregate(session, "order-1")
    assert event.event_type == "inventory.reservation.failed"
    assert "p2" in event.event_data["reason"]


async def test_unknown_product_fails_reservation(session_factory, inventory_handlers, inventory_stores):
    await inventory_handlers.dispatch(_created("order-1", ("ghost", 1)))

    async with session_factory() as session:
        [event] = await inventory_stores.outbox.list_for_aggregate(session, "order-1")
    assert event.event_data["reason"] == "Product ghost not found"


async def test_duplicate_order_created_reserves_once(session_factory, inventory_handlers, inventory_stores):
    await _stock(session_factory, "p1", 5)
    envelope = _created("order-1", ("p1", 2))

    assert await inventory_handlers.dispatch(envelope) is HandleResult.PROCESSED
    assert await inventory_handlers.dispatch(envelope) is HandleResult.DUPLICATE

    async with session_factory() as session:
        assert (await queries.get_product(session, "p1"))["reserved"] == 2
    assert await _outbox_types(session_factory, inventory_stores, "order-1") == ["inventory.reserved"]


async def test_cancel_releases_reservation_once(session_factory, inventory_handlers, inventory_stores):
    await _stock(session_factory, "p1", 5)
    await inventory_handlers.dispatch(_created("order-1", ("p1", 2)))
    cancelled = make_envelope("order.cancelled", {"order_id": "order-1", "reason": "changed my mind"})

    assert await inventory_handlers.dispatch(cancelled) is HandleResult.PROCESSED
    assert await inventory_handlers.dispatch(cancelled) is HandleResult.DUPLICATE

    async with session_factory() as session:
        assert (await queries.get_product(session, "p1"))["reserved"] == 0
        [reservation] = await queries.list_reservations(session, "order-1")
    assert reservation["status"] == "RELEASED"
    assert await _outbox_types(session_factory, inventory_stores, "order-1") == [
        "inventory.reserved",
        "inventory.released",
    ]


async def test_other_order_events_are_ignored(inventory_handlers):
    envelope = make_envelope("order.confirmed", {"order_id": "order-1"})
    assert await inventory_handlers.dispatch(envelope) is HandleResult.IGNORED


async def test_malformed_order_created_is_rejected(inventory_handlers):
    with pytest.raises(ValidationError):
        await inventory_handlers.dispatch(make_envelope("order.created", {"order_id": "order-1"}))


async def test_stock_cannot_drop_below_reserved(session_factory, inventory_handlers):
    await _stock(session_factory, "p1", 5)
    await inventory_handlers.dispatch(_created("order-1", ("p1", 4)))

    with pytest.raises(ValidationError):
        await _stock(session_factory, "p1", 3)

    product = await _stock(session_factory, "p1", 10)
    assert product["available"] == 6
