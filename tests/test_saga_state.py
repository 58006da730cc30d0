import pytest

from fulfillment.db import commit
from fulfillment.errors import InvalidTransition, SagaTerminated, StorageConflict
from fulfillment.order.saga_state import SagaStep, SagaTracker, StepStatus, TerminalStatus


@pytest.fixture
def tracker():
    return SagaTracker()


async def _start(session_factory, tracker, order_id="order-1"):
    async with session_factory() as session:
        saga = await tracker.start(session, order_id)
        await commit(session)
    return saga


async def test_start_records_created_step(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    assert saga.current_step is SagaStep.CREATED
    assert saga.steps["created"].status is StepStatus.SUCCESS
    assert not saga.compensation_required
    assert not saga.is_terminal

    async with session_factory() as session:
        found = await tracker.find_by_aggregate_id(session, "order-1")
        by_id = await tracker.get(session, saga.saga_id)
    assert found.saga_id == saga.saga_id
    assert by_id.order_id == "order-1"


async def test_one_saga_per_order(session_factory, tracker):
    await _start(session_factory, tracker)
    with pytest.raises(StorageConflict):
        async with session_factory() as session:
            await tracker.start(session, "order-1")


async def test_find_unknown_order_returns_none(session_factory, tracker):
    async with session_factory() as session:
        assert await tracker.find_by_aggregate_id(session, "missing") is None


async def test_record_step_overwrites_same_step_key(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        await tracker.record_step(session, saga.saga_id, SagaStep.INVENTORY_RESERVING, StepStatus.PENDING)
        state = await tracker.record_step(
            session, saga.saga_id, SagaStep.INVENTORY_FAILED, StepStatus.FAILED, error="out of stock"
        )
        await commit(session)

    assert state.current_step is SagaStep.INVENTORY_FAILED
    assert set(state.steps) == {"created", "inventory_reservation"}
    assert state.steps["inventory_reservation"].status is StepStatus.FAILED
    assert state.steps["inventory_reservation"].error == "out of stock"
    assert state.version == 3


async def test_request_compensation_is_idempotent(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        assert await tracker.request_compensation(
            session, saga.saga_id, "out of stock", SagaStep.INVENTORY_FAILED
        )
        assert not await tracker.request_compensation(
            session, saga.saga_id, "second reason", SagaStep.PAYMENT_FAILED
        )
        await commit(session)
        state = await tracker.get(session, saga.saga_id)

    assert state.compensation_required
    assert state.compensation_reason == "out of stock"
    assert state.current_step is SagaStep.INVENTORY_FAILED


async def test_completed_saga_cannot_be_compensated(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        completed = await tracker.complete(session, saga.saga_id)
        await commit(session)
    assert completed.terminal_status is TerminalStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.steps["confirmation"].status is StepStatus.SUCCESS

    async with session_factory() as session:
        with pytest.raises(SagaTerminated):
            await tracker.request_compensation(session, saga.saga_id, "late", SagaStep.INVENTORY_FAILED)
        with pytest.raises(SagaTerminated):
            await tracker.mark_compensated(session, saga.saga_id)
        with pytest.raises(SagaTerminated):
            await tracker.record_step(session, saga.saga_id, SagaStep.PAYMENT_FAILED, StepStatus.FAILED)

        # 同じ終端への再到達は何もしない
        again = await tracker.complete(session, saga.saga_id)
    assert again.version == completed.version


async def test_compensated_saga_cannot_complete(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        await tracker.request_compensation(session, saga.saga_id, "out of stock", SagaStep.INVENTORY_FAILED)
        compensated = await tracker.mark_compensated(session, saga.saga_id)
        await commit(session)
    assert compensated.terminal_status is TerminalStatus.COMPENSATED
    assert compensated.compensation_required

    async with session_factory() as session:
        with pytest.raises(SagaTerminated):
            await tracker.complete(session, saga.saga_id)
        assert (await tracker.mark_compensated(session, saga.saga_id)).version == compensated.version


async def test_complete_refused_while_compensation_required(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        await tracker.request_compensation(session, saga.saga_id, "out of stock", SagaStep.INVENTORY_FAILED)
        with pytest.raises(InvalidTransition):
            await tracker.complete(session, saga.saga_id)


async def test_mark_compensated_requires_request(session_factory, tracker):
    saga = await _start(session_factory, tracker)
    async with session_factory() as session:
        with pytest.raises(InvalidTransition):
            await tracker.mark_compensated(session, saga.saga_id)


async def test_halted_sagas_are_listed_for_operators(session_factory, tracker):
    halted = await _start(session_factory, tracker, "order-1")
    done = await _start(session_factory, tracker, "order-2")
    await _start(session_factory, tracker, "order-3")

    async with session_factory() as session:
        await tracker.request_compensation(session, halted.saga_id, "out of stock", SagaStep.INVENTORY_FAILED)
        failed = await tracker.mark_failed(session, halted.saga_id, "cannot cancel")
        await tracker.request_compensation(session, done.saga_id, "out of stock", SagaStep.INVENTORY_FAILED)
        await tracker.mark_compensated(session, done.saga_id)
        await commit(session)

        pending = await tracker.list_requiring_compensation(session)

    assert failed.is_halted
    assert failed.steps["compensation"].error == "cannot cancel"
    assert [s.order_id for s in pending] == ["order-1"]


async def test_stale_saga_write_is_rejected(session_factory, tracker):
    saga = await _start(session_factory, tracker)

    async with session_factory() as session:
        await tracker.record_step(session, saga.saga_id, SagaStep.INVENTORY_RESERVED, StepStatus.SUCCESS)
        await commit(session)

    # start() の時点の状態 (version 1) で書き込もうとする
    async with session_factory() as session:
        with pytest.raises(StorageConflict):
            await tracker._save(session, saga, saga.updated_at)
