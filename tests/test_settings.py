import logging

import pytest

from fulfillment.settings import Settings, configure_logging


def test_from_env_reads_defaults(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://localhost/orders")
    for name in ("SERVICE_NAME", "OUTBOX_MAX_RETRIES", "RELAY_BATCH_SIZE", "CONSUMER_GROUP", "CONSUMER_NAME", "CONSUMER_MAX_DELIVERIES"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.service_name == "order-service"
    assert settings.outbox_max_retries == 5
    assert settings.outbox_retention_days == 30
    assert settings.idempotency_ttl_days == 7
    assert settings.relay_interval_seconds == 30
    assert settings.relay_batch_size == 25
    assert settings.consumer_max_deliveries == 5
    assert settings.consumer_reclaim_idle_ms == 60_000
    assert settings.group == "order-service"


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///x.db")
    monkeypatch.setenv("SERVICE_NAME", "inventory-service")
    monkeypatch.setenv("OUTBOX_MAX_RETRIES", "3")
    monkeypatch.setenv("CONSUMER_GROUP", "inventory")
    monkeypatch.setenv("CONSUMER_NAME", "worker-7")

    settings = Settings.from_env()

    assert settings.service_name == "inventory-service"
    assert settings.outbox_max_retries == 3
    assert settings.group == "inventory"
    assert settings.consumer_name == "worker-7"


def test_database_url_is_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(KeyError):
        Settings.from_env()


def test_configure_logging_sets_level():
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG
    configure_logging("INFO")
