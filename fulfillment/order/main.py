"""
Order Service — FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離する。
起動時に lifespan の中で次の 2 つをバックグラウンドタスクとして開始する:

  - Outbox リレー     : order_outbox → order_events ストリーム
  - サブスクライバー  : inventory_events / payment_events → OrderEventHandlers

┌───────────────┐  order_events   ┌───────────────────┐
│ Order Service │ ──── Redis ───▶ │ Inventory Service │
│               │ ◀─── Streams ── │                   │
└───────────────┘ inventory_events└───────────────────┘

起動: uvicorn fulfillment.order.main:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import sessionmaker

from ..bus import EventBus, RedisStreamBus
from ..db import ORDER_SCHEMA, create_engine_and_sessions, create_schema
from ..errors import InvalidTransition, StorageConflict, ValidationError
from ..relay import EventRelay, run_relay_loop
from ..settings import Settings, configure_logging
from ..subscriber import run_subscriber
from . import commands, queries
from .aggregate import Money, OrderItem, OrderStatus
from .handlers import OrderEventHandlers
from .repository import OrderStores

SUBSCRIBED_STREAMS = ["inventory_events", "payment_events"]


@dataclass
class OrderService:
    """プロセスの生存期間中に共有するハンドル一式。"""

    settings: Settings
    session_factory: sessionmaker
    stores: OrderStores
    relay: EventRelay
    handlers: OrderEventHandlers

    @classmethod
    def build(cls, settings: Settings, session_factory: sessionmaker, bus: EventBus) -> "OrderService":
        stores = OrderStores.from_settings(settings)
        return cls(
            settings=settings,
            session_factory=session_factory,
            stores=stores,
            relay=EventRelay(
                session_factory,
                stores.outbox,
                bus,
                source=settings.service_name,
                batch_size=settings.relay_batch_size,
                guard=stores.guard,
            ),
            handlers=OrderEventHandlers(session_factory, stores),
        )


def get_service(request: Request) -> OrderService:
    return request.app.state.service


# ── Request Models ───────────────────────────────


class ItemRequest(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    currency: str = "USD"

    def to_item(self) -> OrderItem:
        return OrderItem.create(
            self.product_id,
            self.product_name,
            self.quantity,
            Money.create(self.unit_price, self.currency),
        )


class CreateOrderRequest(BaseModel):
    order_id: str | None = None
    customer_id: str
    items: list[ItemRequest] = Field(default_factory=list)


class CancelRequest(BaseModel):
    reason: str = "Cancelled by customer"


# ── アプリケーション ─────────────────────────────


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """エンジン・Redis・バックグラウンドタスクを組み立て、終了時に片付ける。"""
        cfg = settings or Settings.from_env("order-service")
        configure_logging(cfg.log_level)

        engine, session_factory = create_engine_and_sessions(cfg.database_url)
        await create_schema(engine, ORDER_SCHEMA)
        redis = aioredis.from_url(cfg.redis_url, decode_responses=True)

        service = OrderService.build(cfg, session_factory, RedisStreamBus(redis))
        app.state.service = service

        shutdown_event = asyncio.Event()
        tasks = [
            asyncio.create_task(
                run_relay_loop(service.relay, cfg.relay_interval_seconds, shutdown_event)
            ),
            asyncio.create_task(
                run_subscriber(
                    redis,
                    SUBSCRIBED_STREAMS,
                    cfg.group,
                    cfg.consumer_name,
                    service.handlers.dispatch,
                    shutdown_event,
                    reclaim_idle_ms=cfg.consumer_reclaim_idle_ms,
                    max_deliveries=cfg.consumer_max_deliveries,
                )
            ),
        ]
        yield
        shutdown_event.set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "retryable": False})

    @app.exception_handler(InvalidTransition)
    async def on_invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "target": exc.target, "retryable": False},
        )

    @app.exception_handler(StorageConflict)
    async def on_storage_conflict(request: Request, exc: StorageConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": True})


def register_routes(app: FastAPI) -> None:
    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/commands/orders", status_code=201)
    async def cmd_create_order(req: CreateOrderRequest, service: OrderService = Depends(get_service)):
        """注文作成コマンド"""
        items = [i.to_item() for i in req.items]
        order = await commands.run_with_retry(
            service.session_factory,
            lambda session: commands.create_order(
                session, service.stores, req.customer_id, items, req.order_id
            ),
        )
        return order.to_dict()

    @app.post("/commands/orders/{order_id}/items")
    async def cmd_add_item(order_id: str, req: ItemRequest, service: OrderService = Depends(get_service)):
        item = req.to_item()
        order = await commands.run_with_retry(
            service.session_factory,
            lambda session: commands.add_item(session, service.stores, order_id, item),
        )
        if order is None:
            raise HTTPException(404, "Order not found")
        return order.to_dict()

    @app.delete("/commands/orders/{order_id}/items/{product_id}")
    async def cmd_remove_item(order_id: str, product_id: str, service: OrderService = Depends(get_service)):
        order = await commands.run_with_retry(
            service.session_factory,
            lambda session: commands.remove_item(session, service.stores, order_id, product_id),
        )
        if order is None:
            raise HTTPException(404, "Order not found")
        return order.to_dict()

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel_order(order_id: str, req: CancelRequest, service: OrderService = Depends(get_service)):
        """注文キャンセルコマンド"""
        order = await commands.run_with_retry(
            service.session_factory,
            lambda session: commands.cancel_order(session, service.stores, order_id, req.reason),
        )
        if order is None:
            raise HTTPException(404, "Order not found")
        return order.to_dict()

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/queries/orders")
    async def query_list_orders(
        customer_id: str | None = None,
        status: OrderStatus | None = None,
        service: OrderService = Depends(get_service),
    ):
        async with service.session_factory() as session:
            return await queries.list_orders(session, service.stores.orders, customer_id, status)

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: str, service: OrderService = Depends(get_service)):
        async with service.session_factory() as session:
            order = await queries.get_order(session, service.stores.orders, order_id)
            if not order:
                raise HTTPException(404, "Order not found")
            return order

    @app.get("/queries/orders/{order_id}/saga")
    async def query_get_saga(order_id: str, service: OrderService = Depends(get_service)):
        async with service.session_factory() as session:
            saga = await queries.get_saga_for_order(session, service.stores.sagas, order_id)
            if not saga:
                raise HTTPException(404, "Saga not found")
            return saga

    # ── 運用 (オペレーター向け) ──────────────────

    @app.get("/sagas/compensation")
    async def sagas_requiring_compensation(service: OrderService = Depends(get_service)):
        """補償が要求されたまま終わっていない Saga"""
        async with service.session_factory() as session:
            return await queries.list_sagas_requiring_compensation(session, service.stores.sagas)

    @app.post("/outbox/relay")
    async def relay_outbox(service: OrderService = Depends(get_service)):
        """リレーを今すぐ 1 回実行する"""
        report = await service.relay.run_once()
        return {
            "published": report.published,
            "failed": report.failed,
            "escalated": [e.event_id for e in report.escalated],
        }

    @app.get("/outbox/failed")
    async def failed_outbox_events(service: OrderService = Depends(get_service)):
        """配信試行が上限に達したイベント"""
        async with service.session_factory() as session:
            events = await service.stores.outbox.list_failed(session)
        return [e.model_dump(mode="json") for e in events]

    @app.get("/health")
    async def health(service: OrderService = Depends(get_service)):
        return {"status": "ok", "service": service.settings.service_name}
