"""
Order Service — Saga 状態トラッカー

コレオグラフィ型の Saga には中央のオーケストレーターがいない。
各サービスがイベントに反応して動くので、1 件の業務トランザクションが
今どこまで進んだかはこのテーブルに記録して追跡する。

  用途:
  - Saga の進行状況の監視
  - 失敗したトランザクションの調査
  - 手動対応が必要な Saga の一覧 (compensation_required)

Saga の記録は診断用であり、正しさのゲートではない。
記録が見つからなくても、ハンドラは集約側の処理を続ける。

終端は 2 種類で、互いに排他:
  COMPLETED    全ステップ成功 (前進完了)
  COMPENSATED  補償を適用済み (後退完了)
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import from_iso, to_iso
from ..errors import InvalidTransition, SagaTerminated, StorageConflict

logger = logging.getLogger(__name__)


class SagaStep(str, Enum):
    CREATED = "CREATED"
    INVENTORY_RESERVING = "INVENTORY_RESERVING"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    COMPENSATING = "COMPENSATING"
    COMPENSATED = "COMPENSATED"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TerminalStatus(str, Enum):
    COMPLETED = "COMPLETED"
    COMPENSATED = "COMPENSATED"


# 同じ段階の再試行は 1 つのキーにまとめ、最新の結果だけを残す
STEP_KEYS: dict[SagaStep, str] = {
    SagaStep.CREATED: "created",
    SagaStep.INVENTORY_RESERVING: "inventory_reservation",
    SagaStep.INVENTORY_RESERVED: "inventory_reservation",
    SagaStep.INVENTORY_FAILED: "inventory_reservation",
    SagaStep.PAYMENT_PROCESSING: "payment_processing",
    SagaStep.PAYMENT_COMPLETED: "payment_processing",
    SagaStep.PAYMENT_FAILED: "payment_processing",
    SagaStep.CONFIRMED: "confirmation",
    SagaStep.COMPENSATING: "compensation",
    SagaStep.COMPENSATED: "compensation",
    SagaStep.FAILED: "compensation",
}


class StepOutcome(BaseModel):
    status: StepStatus
    timestamp: datetime
    error: str | None = None


class SagaState(BaseModel):
    saga_id: str
    order_id: str
    current_step: SagaStep
    steps: dict[str, StepOutcome]
    compensation_required: bool = False
    compensation_reason: str | None = None
    terminal_status: TerminalStatus | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_status is not None

    @property
    def is_halted(self) -> bool:
        """補償に失敗し、手動対応を待っている"""
        return self.current_step is SagaStep.FAILED and not self.is_terminal


def _row_to_state(row) -> SagaState:
    steps = json.loads(row.steps) if isinstance(row.steps, str) else row.steps
    return SagaState(
        saga_id=row.saga_id,
        order_id=row.order_id,
        current_step=SagaStep(row.current_step),
        steps=steps,
        compensation_required=bool(row.compensation_required),
        compensation_reason=row.compensation_reason,
        terminal_status=row.terminal_status,
        version=row.version,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        completed_at=from_iso(row.completed_at),
    )


def _dump_steps(steps: dict[str, StepOutcome]) -> str:
    return json.dumps({key: outcome.model_dump(mode="json") for key, outcome in steps.items()})


class SagaTracker:
    """
    Saga 状態の読み書き。

    すべての更新は version による条件付き UPDATE で行い、
    先行する書き込みがあれば StorageConflict を送出する。
    コミットは呼び出し側が行う。
    """

    def __init__(self, table: str = "saga_states") -> None:
        self.table = table

    async def start(self, session: AsyncSession, order_id: str) -> SagaState:
        now = datetime.now(timezone.utc)
        state = SagaState(
            saga_id=str(uuid4()),
            order_id=order_id,
            current_step=SagaStep.CREATED,
            steps={"created": StepOutcome(status=StepStatus.SUCCESS, timestamp=now)},
            created_at=now,
            updated_at=now,
        )
        try:
            await session.execute(
                text(f"""
                    INSERT INTO {self.table}
                        (saga_id, order_id, current_step, steps, compensation_required,
                         compensation_reason, terminal_status, version,
                         created_at, updated_at, completed_at)
                    VALUES
                        (:saga_id, :order_id, :current_step, :steps, :compensation_required,
                         NULL, NULL, 1, :now, :now, NULL)
                """),
                {
                    "saga_id": state.saga_id,
                    "order_id": order_id,
                    "current_step": state.current_step.value,
                    "steps": _dump_steps(state.steps),
                    "compensation_required": False,
                    "now": to_iso(now),
                },
            )
        except IntegrityError as e:
            raise StorageConflict(f"A saga already exists for order {order_id}") from e

        logger.info("Created saga %s for order %s", state.saga_id, order_id)
        return state

    async def record_step(
        self,
        session: AsyncSession,
        saga_id: str,
        step: SagaStep,
        outcome: StepStatus,
        error: str | None = None,
    ) -> SagaState:
        state = await self._load(session, saga_id)
        if state.is_terminal:
            raise SagaTerminated(
                state.terminal_status.value, step.value, f"Saga {saga_id} is already {state.terminal_status.value}"
            )
        now = datetime.now(timezone.utc)
        state.current_step = step
        state.steps[STEP_KEYS[step]] = StepOutcome(status=outcome, timestamp=now, error=error)
        await self._save(session, state, now)
        logger.info("Updated saga %s step to %s (%s)", saga_id, step.value, outcome.value)
        return state

    async def request_compensation(
        self,
        session: AsyncSession,
        saga_id: str,
        reason: str,
        failed_step: SagaStep,
    ) -> bool:
        """
        補償が必要であることを記録する。
        2 回目以降の呼び出しは何もせず False を返す。
        """
        state = await self._load(session, saga_id)
        if state.compensation_required:
            return False
        if state.is_terminal:
            raise SagaTerminated(
                state.terminal_status.value,
                SagaStep.COMPENSATING.value,
                f"Saga {saga_id} is already {state.terminal_status.value}",
            )
        now = datetime.now(timezone.utc)
        state.current_step = failed_step
        state.compensation_required = True
        state.compensation_reason = reason
        await self._save(session, state, now)
        logger.warning("Marked saga %s for compensation: %s", saga_id, reason)
        return True

    async def complete(self, session: AsyncSession, saga_id: str) -> SagaState:
        state = await self._load(session, saga_id)
        if state.terminal_status is TerminalStatus.COMPLETED:
            return state
        if state.is_terminal:
            raise SagaTerminated(state.terminal_status.value, TerminalStatus.COMPLETED.value)
        if state.compensation_required:
            raise InvalidTransition(
                state.current_step.value,
                TerminalStatus.COMPLETED.value,
                f"Saga {saga_id} requires compensation and cannot complete",
            )
        now = datetime.now(timezone.utc)
        state.current_step = SagaStep.CONFIRMED
        state.steps[STEP_KEYS[SagaStep.CONFIRMED]] = StepOutcome(status=StepStatus.SUCCESS, timestamp=now)
        state.terminal_status = TerminalStatus.COMPLETED
        state.completed_at = now
        await self._save(session, state, now)
        logger.info("Completed saga %s", saga_id)
        return state

    async def mark_compensated(self, session: AsyncSession, saga_id: str) -> SagaState:
        state = await self._load(session, saga_id)
        if state.terminal_status is TerminalStatus.COMPENSATED:
            return state
        if state.is_terminal:
            raise SagaTerminated(state.terminal_status.value, TerminalStatus.COMPENSATED.value)
        if not state.compensation_required:
            raise InvalidTransition(
                state.current_step.value,
                TerminalStatus.COMPENSATED.value,
                f"Saga {saga_id} was never marked for compensation",
            )
        now = datetime.now(timezone.utc)
        state.current_step = SagaStep.COMPENSATED
        state.steps[STEP_KEYS[SagaStep.COMPENSATED]] = StepOutcome(status=StepStatus.SUCCESS, timestamp=now)
        state.terminal_status = TerminalStatus.COMPENSATED
        state.completed_at = now
        await self._save(session, state, now)
        logger.info("Compensated saga %s", saga_id)
        return state

    async def mark_failed(self, session: AsyncSession, saga_id: str, error: str) -> SagaState:
        """
        補償そのものが失敗した。自動進行を止める。
        compensation_required は True のまま残り、オペレーターの一覧に載る。
        """
        state = await self._load(session, saga_id)
        if state.is_terminal:
            raise SagaTerminated(state.terminal_status.value, SagaStep.FAILED.value)
        now = datetime.now(timezone.utc)
        state.current_step = SagaStep.FAILED
        state.steps[STEP_KEYS[SagaStep.FAILED]] = StepOutcome(
            status=StepStatus.FAILED, timestamp=now, error=error
        )
        await self._save(session, state, now)
        logger.error("Saga %s halted, manual intervention required: %s", saga_id, error)
        return state

    # ── 読み取り ─────────────────────────────────

    async def get(self, session: AsyncSession, saga_id: str) -> SagaState | None:
        result = await session.execute(
            text(f"SELECT * FROM {self.table} WHERE saga_id = :saga_id"),
            {"saga_id": saga_id},
        )
        row = result.fetchone()
        return _row_to_state(row) if row else None

    async def find_by_aggregate_id(self, session: AsyncSession, order_id: str) -> SagaState | None:
        result = await session.execute(
            text(f"SELECT * FROM {self.table} WHERE order_id = :order_id"),
            {"order_id": order_id},
        )
        row = result.fetchone()
        return _row_to_state(row) if row else None

    async def list_requiring_compensation(self, session: AsyncSession) -> list[SagaState]:
        """補償が要求されたまま終端に達していない Saga。"""
        result = await session.execute(
            text(f"""
                SELECT * FROM {self.table}
                WHERE compensation_required = :required AND terminal_status IS NULL
                ORDER BY updated_at ASC
            """),
            {"required": True},
        )
        return [_row_to_state(row) for row in result.fetchall()]

    # ── 内部 ─────────────────────────────────────

    async def _load(self, session: AsyncSession, saga_id: str) -> SagaState:
        state = await self.get(session, saga_id)
        if state is None:
            raise LookupError(f"Saga {saga_id} not found")
        return state

    async def _save(self, session: AsyncSession, state: SagaState, now: datetime) -> None:
        result = await session.execute(
            text(f"""
                UPDATE {self.table}
                SET current_step = :current_step,
                    steps = :steps,
                    compensation_required = :compensation_required,
                    compensation_reason = :compensation_reason,
                    terminal_status = :terminal_status,
                    completed_at = :completed_at,
                    updated_at = :updated_at,
                    version = :expected_version + 1
                WHERE saga_id = :saga_id AND version = :expected_version
            """),
            {
                "current_step": state.current_step.value,
                "steps": _dump_steps(state.steps),
                "compensation_required": state.compensation_required,
                "compensation_reason": state.compensation_reason,
                "terminal_status": state.terminal_status.value if state.terminal_status else None,
                "completed_at": to_iso(state.completed_at),
                "updated_at": to_iso(now),
                "saga_id": state.saga_id,
                "expected_version": state.version,
            },
        )
        if result.rowcount == 0:
            raise StorageConflict(f"Saga {state.saga_id} was modified concurrently")
        state.version += 1
        state.updated_at = now
