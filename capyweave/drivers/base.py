"""
ドライバ — テスト対象アプリケーションを実際に操作するケイパビリティ

全てのドライバ（インプロセス・HTTP・ブラウザ）はこの Protocol を満たす必要がある。
Session と Waiter はドライバ固有の例外型を知らずに済むよう、
各ドライバはトランスポート固有の失敗を DriverOperationError に変換して送出する。

主な構成:
  - Driver Protocol: ドライバの共通インターフェース
  - BaseDriver: 任意メソッドの既定実装
  - translate_errors: トランスポート例外を DriverOperationError に変換するコンテキスト
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol, runtime_checkable

from ..errors import DriverOperationError


# ---------------------------------------------------------------------------
# ドライバ Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class Driver(Protocol):
    """ドライバの共通インターフェース。

    Registry に登録するファクトリは (app) を受け取り、
    この Protocol を満たすオブジェクトを返す必要がある。
    """

    needs_server: bool

    def visit(self, url: str) -> None:
        """url へ遷移する。"""
        ...

    @property
    def current_url(self) -> str:
        """現在の URL を返す。"""
        ...

    @property
    def html(self) -> str:
        """現在のページの HTML（レスポンスボディ）を返す。"""
        ...

    def reset(self) -> None:
        """Cookie や現在のページなどのブラウジング状態を破棄する。"""
        ...

    def quit(self) -> None:
        """ドライバが保持するリソースを解放する。"""
        ...


# ---------------------------------------------------------------------------
# 既定実装
# ---------------------------------------------------------------------------

class BaseDriver:
    """Driver Protocol の任意メソッドに既定実装を提供する基底クラス。

    サブクラスは visit / current_url / html を実装する。
    """

    needs_server: bool = False

    def __init__(self, app: Any = None) -> None:
        self.app = app

    def visit(self, url: str) -> None:
        raise NotImplementedError

    @property
    def current_url(self) -> str:
        raise NotImplementedError

    @property
    def html(self) -> str:
        raise NotImplementedError

    def reset(self) -> None:
        pass

    def quit(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} needs_server={self.needs_server}>"


_REQUIRED_MEMBERS = ("visit", "current_url", "html")


def implements_driver(obj: Any) -> bool:
    """obj が Driver の必須メンバー（visit / current_url / html）を持つかを返す。

    isinstance(obj, Driver) はプロパティを評価する場合があるため、
    クラス属性とインスタンス辞書だけを参照して判定する。
    """
    instance_attrs = getattr(obj, "__dict__", {})
    return all(
        hasattr(type(obj), name) or name in instance_attrs
        for name in _REQUIRED_MEMBERS
    )


@contextmanager
def translate_errors(
    *exc_types: type[BaseException], action: Optional[str] = None
) -> Iterator[None]:
    """exc_types の例外を DriverOperationError に変換する。

    Args:
        *exc_types: 変換対象の例外クラス（トランスポート固有）
        action: エラーメッセージに含める操作名
    """
    try:
        yield
    except exc_types as exc:
        prefix = f"{action} に失敗しました" if action else "ドライバ操作に失敗しました"
        raise DriverOperationError(f"{prefix}: {exc}") from exc
