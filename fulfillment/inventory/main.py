"""
Inventory Service — FastAPI エントリーポイント

Saga の参加サービス。order_events を購読して在庫を引き当て・解放し、
結果を自分の Outbox から inventory_events に発行する。

起動: uvicorn fulfillment.inventory.main:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from ..bus import EventBus, RedisStreamBus
from ..db import INVENTORY_SCHEMA, create_engine_and_sessions, create_schema
from ..errors import StorageConflict, ValidationError
from ..relay import EventRelay, run_relay_loop
from ..settings import Settings, configure_logging
from ..subscriber import run_subscriber
from . import commands, queries
from .handlers import InventoryEventHandlers, InventoryStores

SUBSCRIBED_STREAMS = ["order_events"]


@dataclass
class InventoryService:
    settings: Settings
    session_factory: sessionmaker
    stores: InventoryStores
    relay: EventRelay
    handlers: InventoryEventHandlers

    @classmethod
    def build(cls, settings: Settings, session_factory: sessionmaker, bus: EventBus) -> "InventoryService":
        stores = InventoryStores.from_settings(settings)
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
            handlers=InventoryEventHandlers(session_factory, stores),
        )


def get_service(request: Request) -> InventoryService:
    return request.app.state.service


class StockRequest(BaseModel):
    product_name: str
    quantity: int


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env("inventory-service")
        configure_logging(cfg.log_level)

        engine, session_factory = create_engine_and_sessions(cfg.database_url)
        await create_schema(engine, INVENTORY_SCHEMA)
        redis = aioredis.from_url(cfg.redis_url, decode_responses=True)

        service = InventoryService.build(cfg, session_factory, RedisStreamBus(redis))
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

    app = FastAPI(title="Inventory Service", lifespan=lifespan)

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "retryable": False})

    @app.exception_handler(StorageConflict)
    async def on_storage_conflict(request: Request, exc: StorageConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": True})

    # ── Command Endpoints (Write 側) ─────────────

    @app.put("/commands/products/{product_id}")
    async def cmd_stock_product(product_id: str, req: StockRequest, service: InventoryService = Depends(get_service)):
        """在庫数の登録・更新"""
        async with service.session_factory() as session:
            return await commands.stock_product(session, product_id, req.product_name, req.quantity)

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/queries/products")
    async def query_list_products(service: InventoryService = Depends(get_service)):
        async with service.session_factory() as session:
            return await queries.list_products(session)

    @app.get("/queries/products/{product_id}")
    async def query_get_product(product_id: str, service: InventoryService = Depends(get_service)):
        async with service.session_factory() as session:
            product = await queries.get_product(session, product_id)
            if not product:
                raise HTTPException(404, "Product not found")
            return product

    @app.get("/queries/reservations/{order_id}")
    async def query_reservations(order_id: str, service: InventoryService = Depends(get_service)):
        async with service.session_factory() as session:
            return await queries.list_reservations(session, order_id)

    # ── 運用 ─────────────────────────────────────

    @app.post("/outbox/relay")
    async def relay_outbox(service: InventoryService = Depends(get_service)):
        report = await service.relay.run_once()
        return {
            "published": report.published,
            "failed": report.failed,
            "escalated": [e.event_id for e in report.escalated],
        }

    @app.get("/outbox/failed")
    async def failed_outbox_events(service: InventoryService = Depends(get_service)):
        async with service.session_factory() as session:
            events = await service.stores.outbox.list_failed(session)
        return [e.model_dump(mode="json") for e in events]

    @app.get("/health")
    async def health(service: InventoryService = Depends(get_service)):
        return {"status": "ok", "service": service.settings.service_name}

    return app
