"""
エラー定義 — capyweave の例外階層

全ての例外は CapyweaveError を基底とし、呼び出し元へそのまま送出される。
ローカルに回復（リトライ）するのは Waiter のみ。

主な構成:
  - ConfigurationError: 登録内容の不正
  - ArgumentError: 設定値の不正・API の誤用
  - DriverNotFoundError / ServerNotFoundError: 未登録の名前
  - DriverOperationError: ドライバのトランスポート層エラー
  - ServerStartupError: サーバーが起動猶予内に応答しなかった
  - ExpectationNotMet: アサーションヘルパーの不一致（Waiter がリトライする）
  - WaitTimeoutError / WaitCancelledError: 待機の打ち切り
"""

from __future__ import annotations

from typing import Any, Optional


class CapyweaveError(Exception):
    """capyweave の全例外の基底クラス。"""


class ConfigurationError(CapyweaveError):
    """ドライバ・サーバー登録や設定ファイルの内容が不正な場合のエラー。"""


class ArgumentError(CapyweaveError, ValueError):
    """設定値の不正、またはファクトリの引数不一致など API の誤用。"""


class DriverNotFoundError(CapyweaveError, LookupError):
    """未登録のドライバ名が解決された場合のエラー。"""


class ServerNotFoundError(CapyweaveError, LookupError):
    """未登録のサーバー名が解決された場合のエラー。"""


class DriverOperationError(CapyweaveError):
    """ドライバのトランスポート固有の失敗をラップするエラー。

    元の例外は __cause__ に保持される。
    """


class ServerStartupError(CapyweaveError):
    """サーバーが起動猶予時間内に応答可能にならなかった場合のエラー。"""


class ExpectationNotMet(CapyweaveError, AssertionError):
    """アサーションヘルパーの期待値が（まだ）満たされていない。"""


class WaitTimeoutError(CapyweaveError, AssertionError):
    """待機期限までに check が成功しなかった場合のエラー。

    Attributes:
        reason: 最後に返された not-yet の理由（文字列または例外）
        attempts: check の呼び出し回数
        elapsed: 経過秒数
    """

    def __init__(
        self,
        message: str,
        *,
        reason: Any = None,
        attempts: int = 0,
        elapsed: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts
        self.elapsed = elapsed


class WaitCancelledError(CapyweaveError):
    """待機中に外部からキャンセルされた場合のエラー。"""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


def describe_reason(reason: Optional[Any]) -> str:
    """not-yet の理由を表示用文字列に変換する。"""
    if reason is None:
        return "理由なし"
    if isinstance(reason, BaseException):
        text = str(reason)
        return f"{type(reason).__name__}: {text}" if text else type(reason).__name__
    return str(reason)
