"""
テスト共通フィクスチャ

- 一時ファイルの SQLite (aiosqlite) に両サービスのスキーマを作る
- バスはメモリ上のテストダブル。指定した event_id の発行を失敗させられる
"""

import pytest

from fulfillment.db import INVENTORY_SCHEMA, ORDER_SCHEMA, create_engine_and_sessions, create_schema
from fulfillment.inventory.handlers import InventoryEventHandlers, InventoryStores
from fulfillment.order.handlers import OrderEventHandlers
from fulfillment.order.repository import OrderStores
from fulfillment.relay import EventRelay
from fulfillment.settings import Settings

from support import InMemoryBus


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", consumer_name="test")


@pytest.fixture
async def session_factory(settings):
    engine, factory = create_engine_and_sessions(settings.database_url)
    await create_schema(engine, ORDER_SCHEMA)
    await create_schema(engine, INVENTORY_SCHEMA)
    yield factory
    await engine.dispose()


@pytest.fixture
def bus():
    return InMemoryBus()


@pytest.fixture
def stores(settings):
    return OrderStores.from_settings(settings)


@pytest.fixture
def handlers(session_factory, stores):
    return OrderEventHandlers(session_factory, stores)


@pytest.fixture
def order_relay(session_factory, stores, bus):
    return EventRelay(session_factory, stores.outbox, bus, source="order-service", guard=stores.guard)


@pytest.fixture
def inventory_stores(settings):
    return InventoryStores.from_settings(settings)


@pytest.fixture
def inventory_handlers(session_factory, inventory_stores):
    return InventoryEventHandlers(session_factory, inventory_stores)


@pytest.fixture
def inventory_relay(session_factory, inventory_stores, bus):
    return EventRelay(session_factory, inventory_stores.outbox, bus, source="inventory-service")
