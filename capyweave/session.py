"""
Session — テストコードが操作するセッション

1 つのアプリケーションと 1 つのドライバを結び付け、遷移・参照・アサーションの
コマンドを受け付ける。ドライバは最初の使用時に Registry から解決してキャッシュし、
ドライバがネットワーク越しの操作を必要とする場合は ServerPool からサーバーを取得する。

状態遷移:
  UNBOUND（ドライバ未生成）→ BOUND（ドライバ生成済み）
  → switch_driver / reset / quit で UNBOUND に戻る

主な機能:
  - 遅延バインディング（生成時には登録名を記録するだけ）
  - visit: app_host / サーバー URL を基準とした URL の組み立て
  - reset: ドライバ状態の破棄とサーバー内エラーの再送出
  - synchronize: Waiter によるリトライ付き実行
  - assert_text / assert_current_path: 待機付きアサーションヘルパー
"""

from __future__ import annotations

import enum
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

from .errors import ExpectationNotMet, WaitTimeoutError
from .registry import get_registry
from .waiter import CheckResult, Waiter

if TYPE_CHECKING:
    from .config import Configuration
    from .registry import Registry
    from .server import ServerHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _quit_driver(driver: Any) -> None:
    """ドライバが quit を持つ場合に呼び出す。"""
    quit_driver = getattr(driver, "quit", None)
    if callable(quit_driver):
        quit_driver()


# ---------------------------------------------------------------------------
# セッション状態
# ---------------------------------------------------------------------------

class SessionState(enum.Enum):
    """セッションのドライバ束縛状態。"""

    UNBOUND = "unbound"
    BOUND = "bound"


# ---------------------------------------------------------------------------
# Session 本体
# ---------------------------------------------------------------------------

class Session:
    """アプリケーションとドライバを結び付けるセッション。

    生成時には何も解決しない。未登録のドライバ名は最初の使用時に
    DriverNotFoundError となる。

    使用例::

        session = Session("in_process", app)
        session.visit("/")
        session.assert_text("Hello world!")
    """

    def __init__(
        self,
        driver_name: Optional[str] = None,
        app: Any = None,
        *,
        registry: Optional[Registry] = None,
    ) -> None:
        """Session を初期化する。

        Args:
            driver_name: ドライバ名。None の場合は config.default_driver
            app: テスト対象の WSGI アプリケーション
            registry: 使用するレジストリ。None の場合はプロセス既定のレジストリ
        """
        self._registry = registry if registry is not None else get_registry()
        self._app = app
        self._driver_name = driver_name
        self._driver: Any = None
        self._server: Optional[ServerHandle] = None
        self._last_url: Optional[str] = None
        self._waiter = Waiter(self._registry.config)

    def __repr__(self) -> str:
        return f"<Session driver={self.driver_name!r} state={self.state.value}>"

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.quit()

    # -------------------------------------------------------------------
    # 属性
    # -------------------------------------------------------------------

    @property
    def app(self) -> Any:
        """テスト対象アプリケーション（セッションの生存期間中は不変）。"""
        return self._app

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def config(self) -> Configuration:
        return self._registry.config

    @property
    def driver_name(self) -> str:
        """使用するドライバ名。"""
        return self._driver_name or self.config.default_driver

    @property
    def state(self) -> SessionState:
        """現在の束縛状態を返す。"""
        return SessionState.BOUND if self._driver is not None else SessionState.UNBOUND

    @property
    def server(self) -> Optional[ServerHandle]:
        """取得済みのサーバー。未取得の場合は None。"""
        return self._server

    @property
    def waiter(self) -> Waiter:
        return self._waiter

    @property
    def last_url(self) -> Optional[str]:
        """最後に訪問に成功した URL。switch_driver 後も保持される。"""
        return self._last_url

    # -------------------------------------------------------------------
    # ドライバ解決
    # -------------------------------------------------------------------

    def driver(self) -> Any:
        """ドライバを解決して返す（2 回目以降はキャッシュを返す）。

        ドライバが needs_server を持ち、run_server が有効でアプリケーションが
        指定されている場合はサーバーも取得する。失敗した場合は UNBOUND のまま。

        Raises:
            DriverNotFoundError: ドライバ名が未登録の場合
            ServerNotFoundError: サーバー名が未登録の場合
            ServerStartupError: サーバーが起動しなかった場合
        """
        if self._driver is not None:
            return self._driver

        driver = self._registry.build_driver(self.driver_name, self._app)
        if getattr(driver, "needs_server", False):
            try:
                self._ensure_server()
            except Exception:
                _quit_driver(driver)
                raise
        self._driver = driver
        logger.debug("セッションがドライバ '%s' に束縛されました", self.driver_name)
        return driver

    def _ensure_server(self) -> None:
        """必要に応じてサーバーを取得する。"""
        config = self.config
        if not config.run_server or self._app is None:
            return
        if (
            self._server is not None
            and self._server.alive
            and self._server.server_name == config.server_name
        ):
            return
        self._release_server()
        self._server = self._registry.server_pool.acquire(self._app, config.server_name)

    def _release_server(self) -> None:
        if self._server is not None:
            server, self._server = self._server, None
            self._registry.server_pool.release(server)

    def switch_driver(self, name: str) -> None:
        """ドライバを切り替える。

        解決済みのドライバを破棄し（quit する）、次のコマンドで再解決する。
        アプリケーションと last_url は保持する。
        """
        previous = self._driver
        self._driver = None
        self._driver_name = name
        self._release_server()
        if previous is not None:
            _quit_driver(previous)
        logger.debug("ドライバを '%s' に切り替えました", name)

    # -------------------------------------------------------------------
    # 遷移・参照
    # -------------------------------------------------------------------

    def visit(self, path: str) -> None:
        """path へ遷移する。

        相対パスは app_host、なければサーバーの URL を基準に絶対 URL にする。
        どちらもない場合はドライバにそのまま渡す（ドライバ側の既定ホストで解決）。

        Args:
            path: 遷移先のパスまたは URL
        """
        driver = self.driver()
        url = self._build_url(str(path))
        logger.info("visit: %s", url)
        driver.visit(url)
        self._last_url = driver.current_url or url

    def _build_url(self, path: str) -> str:
        """visit に渡す URL を組み立てる。"""
        base = self.config.app_host or (self._server.base_url if self._server else None)
        parts = urlsplit(path)
        if not base or parts.scheme not in ("", "http", "https"):
            return path

        url = path
        if not parts.scheme and not parts.netloc:
            if not path.startswith("/"):
                path = "/" + path
            url = urljoin(base, path)
        return self._adjust_server_port(url)

    def _adjust_server_port(self, url: str) -> str:
        """always_include_port が有効な場合、ポート未指定の URL にサーバーのポートを付与する。"""
        if self._server is None or not self.config.always_include_port:
            return url
        parts = urlsplit(url)
        if parts.port is not None or not parts.hostname:
            return url
        netloc = f"{parts.hostname}:{self._server.port}"
        if parts.username:
            userinfo = parts.username + (f":{parts.password}" if parts.password else "")
            netloc = f"{userinfo}@{netloc}"
        return urlunsplit(parts._replace(netloc=netloc))

    @property
    def current_url(self) -> str:
        """ドライバの現在の URL を返す。"""
        return self.driver().current_url

    @property
    def current_path(self) -> Optional[str]:
        """現在の URL のパス部分。未訪問の場合は None。"""
        url = self.current_url
        if not url:
            return None
        return urlsplit(url).path or "/"

    @property
    def current_host(self) -> Optional[str]:
        """現在の URL のスキームとホスト部分（例: http://www.example.com）。"""
        url = self.current_url
        if not url:
            return None
        parts = urlsplit(url)
        return f"{parts.scheme}://{parts.netloc}" if parts.netloc else None

    @property
    def html(self) -> str:
        """現在のページの HTML を返す。"""
        return self.driver().html

    @property
    def body(self) -> str:
        """html の別名。"""
        return self.html

    # -------------------------------------------------------------------
    # リセット・終了
    # -------------------------------------------------------------------

    def reset(self) -> None:
        """ブラウジング状態を破棄し、UNBOUND に戻る。

        未消費のキャンセル要求も解除する。
        ドライバの reset と quit の後、サーバーの処理中リクエストの完了を待ち、
        サーバー内で捕捉したエラーがあれば raise_server_errors に従って再送出する。
        サーバーは解放しない（次のコマンドで再び使用する）。
        """
        driver, self._driver = self._driver, None
        if driver is not None:
            try:
                driver.reset()
            finally:
                _quit_driver(driver)
        self._last_url = None
        self._waiter.clear_cancel()
        server = self._server
        if server is not None:
            server.wait_for_pending_requests()
            self._raise_server_error(server)

    def _raise_server_error(self, server: ServerHandle) -> None:
        error = server.take_error()
        if error is None:
            return
        config = self.config
        if config.raise_server_errors and isinstance(error, config.server_errors):
            raise error
        logger.debug("サーバー内エラーを無視しました: %r", error)

    def quit(self) -> None:
        """ドライバを終了し、サーバーを解放して UNBOUND に戻る。"""
        driver, self._driver = self._driver, None
        try:
            if driver is not None:
                _quit_driver(driver)
        finally:
            self._release_server()

    # -------------------------------------------------------------------
    # 待機
    # -------------------------------------------------------------------

    def synchronize(
        self,
        func: Callable[[], T],
        wait: Optional[float] = None,
        errors: Optional[tuple[type[BaseException], ...]] = None,
    ) -> T:
        """func を成功するか期限が切れるまで繰り返し実行する。

        Args:
            func: 実行する関数
            wait: 期限（秒）。None の場合は default_max_wait_time
            errors: リトライ対象の例外クラス（既定: ExpectationNotMet）

        Raises:
            WaitTimeoutError: 期限切れ（最後の例外を __cause__ に保持）
        """
        return self._waiter.synchronize(func, wait, errors or (ExpectationNotMet,))

    def retry_until(self, check: Callable[[], CheckResult], wait: Optional[float] = None) -> Any:
        """タグ付き結果を返す check で Waiter.retry_until を実行する。"""
        return self._waiter.retry_until(check, wait)

    def cancel_waits(self) -> None:
        """進行中の待機をキャンセルする（別スレッドから呼び出せる）。"""
        self._waiter.cancel()

    def clear_cancel(self) -> None:
        """未消費のキャンセル要求を解除する。"""
        self._waiter.clear_cancel()

    # -------------------------------------------------------------------
    # アサーションヘルパー
    # -------------------------------------------------------------------

    def assert_text(self, text: str, wait: Optional[float] = None) -> bool:
        """ページの HTML に text が含まれるまで待機する。

        Raises:
            WaitTimeoutError: 期限までに含まれなかった場合
        """

        def check() -> bool:
            if text not in self.html:
                raise ExpectationNotMet(f"ページに {text!r} が見つかりません")
            return True

        return self.synchronize(check, wait)

    def has_text(self, text: str, wait: Optional[float] = None) -> bool:
        """assert_text の真偽値版。"""
        try:
            return self.assert_text(text, wait)
        except WaitTimeoutError:
            return False

    def assert_current_path(
        self, path: Union[str, re.Pattern], wait: Optional[float] = None
    ) -> bool:
        """現在のパスが path（文字列は完全一致、正規表現は search）になるまで待機する。

        Raises:
            WaitTimeoutError: 期限までに一致しなかった場合
        """

        def check() -> bool:
            current = self.current_path
            if isinstance(path, re.Pattern):
                matched = current is not None and path.search(current) is not None
            else:
                matched = current == path
            if not matched:
                raise ExpectationNotMet(
                    f"現在のパス {current!r} が {getattr(path, 'pattern', path)!r} と一致しません"
                )
            return True

        return self.synchronize(check, wait)

    def has_current_path(
        self, path: Union[str, re.Pattern], wait: Optional[float] = None
    ) -> bool:
        """assert_current_path の真偽値版。"""
        try:
            return self.assert_current_path(path, wait)
        except WaitTimeoutError:
            return False
