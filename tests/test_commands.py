import pytest

from fulfillment.errors import StorageConflict
from fulfillment.order import commands
from fulfillment.order.aggregate import OrderItem

from support import two_items, usd


async def test_create_order_starts_saga_in_same_commit(session_factory, stores):
    async with session_factory() as session:
        order = await commands.create_order(session, stores, "cust-1", two_items(), order_id="order-1")

    async with session_factory() as session:
        saga = await stores.sagas.find_by_aggregate_id(session, "order-1")
        [event] = await stores.outbox.list_unpublished(session)
    assert order.version == 1
    assert saga.order_id == "order-1"
    assert event.aggregate_id == "order-1"


async def test_create_order_conflict_leaves_no_saga_behind(session_factory, stores):
    async with session_factory() as session:
        await commands.create_order(session, stores, "cust-1", two_items(), order_id="order-1")

    with pytest.raises(StorageConflict):
        async with session_factory() as session:
            await commands.create_order(session, stores, "cust-2", two_items(), order_id="order-1")

    async with session_factory() as session:
        assert len(await stores.outbox.list_unpublished(session)) == 1


async def test_commands_on_missing_order_return_none(session_factory, stores):
    item = OrderItem.create("p", "P", 1, usd("1.00"))
    async with session_factory() as session:
        assert await commands.add_item(session, stores, "missing", item) is None
        assert await commands.remove_item(session, stores, "missing", "p") is None
        assert await commands.cancel_order(session, stores, "missing", "reason") is None


async def test_run_with_retry_reruns_use_case_after_conflict(session_factory):
    calls = []

    async def use_case(session):
        calls.append(session)
        if len(calls) < 3:
            raise StorageConflict("version mismatch")
        return "done"

    assert await commands.run_with_retry(session_factory, use_case, attempts=3) == "done"
    assert len(calls) == 3
    assert calls[0] is not calls[1]


async def test_run_with_retry_gives_up(session_factory):
    async def use_case(session):
        raise StorageConflict("version mismatch")

    with pytest.raises(StorageConflict):
        await commands.run_with_retry(session_factory, use_case, attempts=2)
