"""
Fulfillment — エラー分類

各例外は retryable 属性を持ち、呼び出し側はそれを見て
「ユースケース全体を再実行するか」「呼び出し元にそのまま返すか」を判断する。

  ValidationError     入力不正             → 再試行しない (クライアント起因)
  InvalidTransition   不正な状態遷移       → 再試行しない (競合として報告)
  StorageConflict     同時書き込みの衝突   → ユースケースを最初からやり直す
  DeliveryFailure     バス配信の一時障害   → retry_count を増やして次回再送
  CompensationFailed  補償の失敗           → 自動進行を止めて手動対応

重複イベントはエラーではない。ハンドラは HandleResult.DUPLICATE を返す。
"""

from enum import Enum


class FulfillmentError(Exception):
    retryable = False


class ValidationError(FulfillmentError):
    """業務操作への入力が不正"""


class InvalidTransition(FulfillmentError):
    """状態遷移表で許可されていない遷移"""

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot transition from {current} to {target}")


class SagaTerminated(InvalidTransition):
    """終端状態に到達済みの Saga を別の終端へ動かそうとした"""


class StorageConflict(FulfillmentError):
    retryable = True


class DeliveryFailure(FulfillmentError):
    retryable = True


class CompensationFailed(FulfillmentError):
    """補償トランザクションが失敗した (二段目の補償は行わない)"""


class HandleResult(str, Enum):
    """受信イベントハンドラの結果。どれも正常終了で、メッセージは確認応答される。"""

    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    NOT_FOUND = "NOT_FOUND"
    HALTED = "HALTED"
    IGNORED = "IGNORED"
