"""
Order Service — Saga 参加サービスからのイベントハンドラ (コレオグラフィ)

中央のオーケストレーターは持たない。各サービスがイベントに反応して
自分のイベントを発行することで、1 つの業務トランザクションが進む。

  order.created ──▶ [在庫サービス] 引き当て
                       │
       ┌───────────────┴────────────────┐
       ▼                                ▼
  inventory.reserved            inventory.reservation.failed
       │                                │
  注文を確定 (CONFIRMED)          Saga に補償を要求
  Saga を完了                     注文をキャンセル (補償)
                                  Saga を補償済みにする

  payment.processing ──▶ 注文を PROCESSING に
  payment.completed  ──▶ 注文を COMPLETED に

各ハンドラは 1 つのトランザクションで:
  1. 冪等性ガードでイベント ID をクレーム (重複なら何もせず終了)
  2. Saga の記録と注文の状態遷移
  3. 注文の行と発生イベントを Outbox に保存
をまとめてコミットする。途中で失敗すればクレームも含めてロールバックされ、
バスの再配信で最初からやり直される。
"""

import logging

from pydantic import ValidationError as PayloadError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..bus import Envelope
from ..db import commit
from ..errors import CompensationFailed, HandleResult, InvalidTransition, ValidationError
from .aggregate import Order, OrderStatus
from .events import (
    INBOUND_EVENT_TYPES,
    InventoryReservationFailed,
    InventoryReserved,
    PaymentCompleted,
    PaymentProcessing,
    parse_inbound,
)
from .repository import OrderStores
from .saga_state import SagaState, SagaStep, StepStatus

logger = logging.getLogger(__name__)


class OrderEventHandlers:
    def __init__(self, session_factory: sessionmaker, stores: OrderStores) -> None:
        self.session_factory = session_factory
        self.stores = stores

    async def dispatch(self, envelope: Envelope) -> HandleResult:
        """エンベロープを event_type に応じたハンドラへ振り分ける。"""
        if envelope.event_type not in INBOUND_EVENT_TYPES:
            logger.debug("Ignoring %s %s", envelope.event_type, envelope.event_id)
            return HandleResult.IGNORED

        try:
            event = parse_inbound(envelope.event_type, envelope.payload)
        except PayloadError as e:
            raise ValidationError(f"Invalid {envelope.event_type} payload: {e}") from e

        if isinstance(event, InventoryReserved):
            return await self.on_inventory_reserved(envelope.event_id, event)
        if isinstance(event, InventoryReservationFailed):
            return await self.on_inventory_reservation_failed(envelope.event_id, event)
        if isinstance(event, PaymentProcessing):
            return await self.on_payment_processing(envelope.event_id, event)
        return await self.on_payment_completed(envelope.event_id, event)

    # ── 在庫サービスの結果 ───────────────────────

    async def on_inventory_reserved(self, event_id: str, event: InventoryReserved) -> HandleResult:
        """在庫引き当て成功 → 注文を確定し、Saga を完了する"""
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, event.event_type, event.order_id):
                return HandleResult.DUPLICATE

            order = await self._load_order(session, event.order_id, event.event_type)
            if order is None:
                await commit(session)
                return HandleResult.NOT_FOUND

            saga = await self._find_saga(session, order.id)
            if saga is not None:
                await self.stores.sagas.record_step(
                    session, saga.saga_id, SagaStep.INVENTORY_RESERVED, StepStatus.SUCCESS
                )

            order.confirm()
            await self.stores.outbox.save_with_events(session, order)

            if saga is not None:
                await self.stores.sagas.complete(session, saga.saga_id)
            await commit(session)

        logger.info("Order %s confirmed after inventory reservation", order.id)
        return HandleResult.PROCESSED

    async def on_inventory_reservation_failed(
        self, event_id: str, event: InventoryReservationFailed
    ) -> HandleResult:
        """
        在庫引き当て失敗 → 補償トランザクションとして注文をキャンセルする。
        顧客が先にキャンセルしていれば補償済みとして扱う。

        キャンセル自体が失敗した場合 (既に終端状態など) は二段目の補償は行わず、
        Saga を FAILED にして自動進行を止める。クレームはコミットするので
        同じイベントが再配信されても再処理はしない。
        """
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, event.event_type, event.order_id):
                return HandleResult.DUPLICATE

            order = await self._load_order(session, event.order_id, event.event_type)
            if order is None:
                await commit(session)
                return HandleResult.NOT_FOUND

            saga = await self._find_saga(session, order.id)
            if saga is not None:
                await self.stores.sagas.record_step(
                    session, saga.saga_id, SagaStep.INVENTORY_FAILED, StepStatus.FAILED, error=event.reason
                )
                await self.stores.sagas.request_compensation(
                    session, saga.saga_id, event.reason, SagaStep.INVENTORY_FAILED
                )

            if order.status is OrderStatus.CANCELLED:
                # 補償の目標状態に既に到達している
                logger.info("Order %s is already cancelled, nothing to compensate", order.id)
            else:
                try:
                    order.cancel(event.reason)
                except InvalidTransition as e:
                    failure = CompensationFailed(f"Cannot cancel order {order.id}: {e}")
                    if saga is not None:
                        await self.stores.sagas.mark_failed(session, saga.saga_id, str(failure))
                    await commit(session)
                    logger.error("%s, manual intervention required", failure)
                    return HandleResult.HALTED
                await self.stores.outbox.save_with_events(session, order)

            if saga is not None:
                await self.stores.sagas.mark_compensated(session, saga.saga_id)
            await commit(session)

        logger.info("Order %s cancelled: %s", order.id, event.reason)
        return HandleResult.PROCESSED

    # ── 決済サービスの結果 ───────────────────────

    async def on_payment_processing(self, event_id: str, event: PaymentProcessing) -> HandleResult:
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, event.event_type, event.order_id):
                return HandleResult.DUPLICATE

            order = await self._load_order(session, event.order_id, event.event_type)
            if order is None:
                await commit(session)
                return HandleResult.NOT_FOUND

            order.start_processing()
            await self.stores.outbox.save_with_events(session, order)
            await commit(session)

        logger.info("Order %s payment processing", order.id)
        return HandleResult.PROCESSED

    async def on_payment_completed(self, event_id: str, event: PaymentCompleted) -> HandleResult:
        """
        決済完了 → 注文を完了する。
        payment.processing を経ずに届いた場合は PROCESSING を経由して
        同じ保存で COMPLETED まで進める (イベントは 2 件)。
        """
        async with self.session_factory() as session:
            if not await self.stores.guard.try_claim(session, event_id, event.event_type, event.order_id):
                return HandleResult.DUPLICATE

            order = await self._load_order(session, event.order_id, event.event_type)
            if order is None:
                await commit(session)
                return HandleResult.NOT_FOUND

            if order.status is OrderStatus.CONFIRMED:
                order.start_processing()
            order.complete()
            await self.stores.outbox.save_with_events(session, order)
            await commit(session)

        logger.info("Order %s completed", order.id)
        return HandleResult.PROCESSED

    # ── 内部 ─────────────────────────────────────

    async def _load_order(self, session: AsyncSession, order_id: str, event_type: str) -> Order | None:
        order = await self.stores.orders.get(session, order_id)
        if order is None:
            logger.warning("Order %s not found for %s", order_id, event_type)
        return order

    async def _find_saga(self, session: AsyncSession, order_id: str) -> SagaState | None:
        """
        Saga の記録は診断用。見つからない・既に終端の場合も
        注文側の処理はそのまま続ける。
        """
        saga = await self.stores.sagas.find_by_aggregate_id(session, order_id)
        if saga is None:
            logger.warning("No saga found for order %s, proceeding without saga tracking", order_id)
            return None
        if saga.is_terminal:
            logger.warning(
                "Saga %s for order %s is already %s, not updating it",
                saga.saga_id, order_id, saga.terminal_status.value,
            )
            return None
        return saga
