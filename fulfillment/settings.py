"""
Fulfillment — 設定

各サービスは起動時に Settings.from_env() で設定を読み込み、
lifespan の中でエンジンや Redis クライアントを組み立てる。
モジュールレベルのグローバルクライアントは持たない。
"""

import logging
import os
import socket

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseModel):
    service_name: str = "order-service"
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"

    outbox_max_retries: int = Field(default=5, ge=1)
    outbox_retention_days: int = Field(default=30, ge=1)
    idempotency_ttl_days: int = Field(default=7, ge=1)

    relay_interval_seconds: float = Field(default=30.0, gt=0)
    relay_batch_size: int = Field(default=25, ge=1)

    consumer_group: str | None = None
    consumer_name: str = Field(default_factory=socket.gethostname)
    consumer_max_deliveries: int = Field(default=5, ge=1)
    consumer_reclaim_idle_ms: int = Field(default=60_000, ge=1)

    @property
    def group(self) -> str:
        return self.consumer_group or self.service_name

    @classmethod
    def from_env(cls, service_name: str = "order-service") -> "Settings":
        env = os.environ
        values = {
            "service_name": env.get("SERVICE_NAME", service_name),
            "database_url": env["DATABASE_URL"],
            "redis_url": env.get("REDIS_URL", "redis://localhost:6379"),
            "log_level": env.get("LOG_LEVEL", "INFO"),
            "outbox_max_retries": env.get("OUTBOX_MAX_RETRIES", 5),
            "outbox_retention_days": env.get("OUTBOX_RETENTION_DAYS", 30),
            "idempotency_ttl_days": env.get("IDEMPOTENCY_TTL_DAYS", 7),
            "relay_interval_seconds": env.get("RELAY_INTERVAL_SECONDS", 30),
            "relay_batch_size": env.get("RELAY_BATCH_SIZE", 25),
            "consumer_group": env.get("CONSUMER_GROUP"),
            "consumer_max_deliveries": env.get("CONSUMER_MAX_DELIVERIES", 5),
            "consumer_reclaim_idle_ms": env.get("CONSUMER_RECLAIM_IDLE_MS", 60_000),
        }
        if "CONSUMER_NAME" in env:
            values["consumer_name"] = env["CONSUMER_NAME"]
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    """ルートロガーにストリームハンドラを 1 つだけ設定する。"""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level.upper())
