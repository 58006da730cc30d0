"""
Fulfillment — データベース接続とスキーマ

各サービスは lifespan の中で create_engine_and_sessions() を呼び、
得たセッションファクトリをハンドラへ明示的に渡す。

SQL は sqlalchemy.text() で直接書く。PostgreSQL (asyncpg) と
SQLite (aiosqlite, テスト用) の両方で動くように:
  - タイムスタンプは ISO-8601 (UTC) 文字列
  - TTL はエポック秒 (expires_at)
  - 金額は Decimal の文字列表現
で保存する。
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import StorageConflict

# PostgreSQL の serialization_failure
SERIALIZATION_FAILURE = "40001"


def create_engine_and_sessions(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def commit(session: AsyncSession) -> None:
    """
    コミットし、同時書き込みの衝突を StorageConflict に変換する。

    衝突した場合はロールバック済みの状態で例外を送出するので、
    呼び出し側はユースケースを最初からやり直せばよい。
    """
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise StorageConflict(f"Conflicting write: {e.orig}") from e
    except DBAPIError as e:
        if getattr(e.orig, "sqlstate", None) != SERIALIZATION_FAILURE:
            raise
        await session.rollback()
        raise StorageConflict(f"Serialization failure: {e.orig}") from e


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def epoch(value: datetime) -> int:
    return int(value.timestamp())


# ── スキーマ ─────────────────────────────────────


def outbox_ddl(table: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            event_id     TEXT PRIMARY KEY,
            aggregate_id TEXT NOT NULL,
            event_type   TEXT NOT NULL,
            event_data   TEXT NOT NULL,
            published    BOOLEAN NOT NULL,
            created_at   TEXT NOT NULL,
            published_at TEXT,
            retry_count  INTEGER NOT NULL,
            expires_at   BIGINT NOT NULL
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_published ON {table} (published, created_at)",
    ]


def idempotency_ddl(table: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            event_id     TEXT PRIMARY KEY,
            event_type   TEXT NOT NULL,
            aggregate_id TEXT NOT NULL,
            processed_at TEXT NOT NULL,
            expires_at   BIGINT NOT NULL
        )
        """,
        f"CREATE INDEX IF NOT EXISTS ix_{table}_expires ON {table} (expires_at)",
    ]


ORDER_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                  TEXT PRIMARY KEY,
        customer_id         TEXT NOT NULL,
        items               TEXT NOT NULL,
        total_amount        TEXT NOT NULL,
        currency            TEXT NOT NULL,
        status              TEXT NOT NULL,
        cancellation_reason TEXT,
        version             INTEGER NOT NULL,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_customer ON orders (customer_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
    """
    CREATE TABLE IF NOT EXISTS saga_states (
        saga_id               TEXT PRIMARY KEY,
        order_id              TEXT NOT NULL UNIQUE,
        current_step          TEXT NOT NULL,
        steps                 TEXT NOT NULL,
        compensation_required BOOLEAN NOT NULL,
        compensation_reason   TEXT,
        terminal_status       TEXT,
        version               INTEGER NOT NULL,
        created_at            TEXT NOT NULL,
        updated_at            TEXT NOT NULL,
        completed_at          TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_saga_states_compensation ON saga_states (compensation_required)",
    *outbox_ddl("order_outbox"),
    *idempotency_ddl("order_idempotency"),
]

INVENTORY_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS inventory_stock (
        product_id   TEXT PRIMARY KEY,
        product_name TEXT NOT NULL,
        quantity     INTEGER NOT NULL,
        reserved     INTEGER NOT NULL,
        updated_at   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_reservations (
        order_id   TEXT NOT NULL,
        product_id TEXT NOT NULL,
        quantity   INTEGER NOT NULL,
        status     TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (order_id, product_id)
    )
    """,
    *outbox_ddl("inventory_outbox"),
    *idempotency_ddl("inventory_idempotency"),
]


async def create_schema(engine: AsyncEngine, statements: list[str]) -> None:
    async with engine.begin() as conn:
        for statement in statements:
            await conn.execute(text(statement))
