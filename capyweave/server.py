"""
サーバー — テスト対象アプリケーションをライブ HTTP エンドポイントとして公開する

ブラウザなどネットワーク経由で操作するドライバのために、
WSGI アプリケーションを別スレッドで起動し、応答可能になるまで待機する。

主な構成:
  - ServerMiddleware: /__identify__ 応答、処理中リクエスト数の計数、エラー捕捉
  - ServerHandle: 起動済みサーバー 1 つ分のハンドル（host, port, アプリ識別子）
  - ServerPool: (アプリ識別子, サーバー名) 単位の取得・再利用・解放
  - run_default_server: uvicorn による組み込み "default" サーバー

ServerPool の取得処理は、検索または生成の判断だけをプロセス全体のロックで保護し、
起動完了の待機中はロックを保持しない。
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

import httpx

from .errors import ServerStartupError, WaitTimeoutError
from .waiter import CheckResult, Fatal, NotYet, Success, retry_until

if TYPE_CHECKING:
    from .registry import Registry

logger = logging.getLogger(__name__)

IDENTIFY_PATH = "/__identify__"

# 処理中リクエストの完了待ち上限（秒）
PENDING_REQUESTS_TIMEOUT = 60.0

# 応答確認リクエストのタイムアウト（秒）
_IDENTIFY_TIMEOUT = 0.5


# ---------------------------------------------------------------------------
# WSGI ミドルウェア
# ---------------------------------------------------------------------------

class ServerMiddleware:
    """サーバーに渡す WSGI アプリケーションのラッパー。

    /__identify__ にはアプリケーションの識別子を返し、応答確認に使用する。
    それ以外のリクエストはアプリケーションへ委譲し、処理中の件数と
    最初に発生した例外を記録する（例外はサーバーへそのまま送出する）。
    """

    def __init__(self, app: Any) -> None:
        self.app = app
        self.identity = str(id(app))
        self.error: Optional[BaseException] = None
        self._pending = 0
        self._lock = threading.Lock()

    @property
    def pending_requests(self) -> int:
        """処理中のリクエスト数。"""
        with self._lock:
            return self._pending

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        if environ.get("PATH_INFO") == IDENTIFY_PATH:
            body = self.identity.encode("ascii")
            start_response(
                "200 OK",
                [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))],
            )
            return [body]

        with self._lock:
            self._pending += 1
        try:
            result = self.app(environ, start_response)
            try:
                return list(result)
            finally:
                close = getattr(result, "close", None)
                if close is not None:
                    close()
        except Exception as exc:
            if self.error is None:
                self.error = exc
            raise
        finally:
            with self._lock:
                self._pending -= 1


# ---------------------------------------------------------------------------
# ポート選択
# ---------------------------------------------------------------------------

def find_available_port(host: str = "127.0.0.1") -> int:
    """host 上の空きポートを返す。"""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def _url_host(host: str) -> str:
    """URL に埋め込むホスト表記を返す。ワイルドカードはループバックに置き換える。"""
    if host in ("0.0.0.0", ""):
        return "127.0.0.1"
    if host == "::":
        return "[::1]"
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


# ---------------------------------------------------------------------------
# ServerHandle 本体
# ---------------------------------------------------------------------------

class ServerHandle:
    """起動済み（または起動中）のサーバー 1 つ分のハンドル。

    サーバーファクトリは別スレッドで実行する。ファクトリはすぐに戻っても
    （リスナーを返す）、serve_forever のようにブロックしてもよい。
    どちらの場合も /__identify__ への応答をもって起動完了とみなす。

    Attributes:
        app: テスト対象アプリケーション
        server_name: 使用したサーバーの登録名
        host: バインド先ホスト
        port: ポート
        middleware: アプリケーションを包む ServerMiddleware
    """

    def __init__(
        self,
        registry: Registry,
        app: Any,
        server_name: str,
        host: str,
        port: int,
    ) -> None:
        self.app = app
        self.server_name = server_name
        self.host = host
        self.port = port
        self.middleware = ServerMiddleware(app)
        self._registry = registry
        # サーバー名・引数の誤りは起動スレッドではなく呼び出し元で送出する
        self._start = registry.prepare_server(server_name, self.middleware, port, host)
        self._listener: Any = None
        self._boot_error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._boot_lock = threading.Lock()
        self._booted = False
        self._stopped = False
        self._ready_failed = False
        # _listener と _stopped の受け渡しを保護する
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"<ServerHandle {self.server_name} {self.base_url} "
            f"identity={self.identity} alive={self.alive}>"
        )

    @property
    def identity(self) -> str:
        """アプリケーションの識別子。"""
        return self.middleware.identity

    @property
    def base_url(self) -> str:
        """サーバーのベース URL。"""
        return f"http://{_url_host(self.host)}:{self.port}"

    @property
    def alive(self) -> bool:
        """停止も起動失敗もしていないかを返す（起動中のハンドルも含む）。"""
        return not self._stopped and not self._ready_failed and self._boot_error is None

    @property
    def responsive(self) -> bool:
        """/__identify__ がアプリケーションの識別子を返すかを確認する。"""
        if self._boot_error is not None or self._stopped:
            return False
        try:
            response = httpx.get(self.base_url + IDENTIFY_PATH, timeout=_IDENTIFY_TIMEOUT)
        except httpx.HTTPError:
            return False
        return response.status_code == 200 and response.text == self.identity

    # -------------------------------------------------------------------
    # 起動
    # -------------------------------------------------------------------

    def boot(self, timeout: Optional[float] = None) -> ServerHandle:
        """サーバーを起動し、応答可能になるまで待機する。

        起動は 1 回だけ行い、以降の呼び出しは応答確認のみ行う。

        Args:
            timeout: 応答待ちの猶予（秒）。None の場合は server_startup_timeout

        Returns:
            自身

        Raises:
            ServerStartupError: 猶予内に応答しない、またはファクトリが失敗した場合
        """
        with self._boot_lock:
            if not self._booted:
                self._booted = True
                logger.info(
                    "サーバー '%s' を起動しています: %s", self.server_name, self.base_url,
                )
                self._thread = threading.Thread(
                    target=self._run,
                    name=f"capyweave-server-{self.port}",
                    daemon=True,
                )
                self._thread.start()

        if timeout is None:
            timeout = self._registry.config.server_startup_timeout
        self._wait_until_ready(timeout)
        return self

    def _run(self) -> None:
        """サーバーファクトリを実行する（起動スレッド）。"""
        try:
            listener = self._start()
        except Exception as exc:
            # 待機側が Fatal として送出する
            self._boot_error = exc
            logger.error("サーバー '%s' の起動に失敗しました: %s", self.server_name, exc)
            return
        with self._state_lock:
            self._listener = listener
            stopped = self._stopped
        if stopped:
            # 起動完了前に stop() が呼ばれていた
            self._stop_listener(listener)

    def _wait_until_ready(self, timeout: float) -> None:
        """応答確認が成功するまで待機する。"""

        def check() -> CheckResult:
            if self._boot_error is not None:
                error = ServerStartupError(
                    f"サーバー '{self.server_name}' の起動中にエラーが発生しました: "
                    f"{self._boot_error}"
                )
                error.__cause__ = self._boot_error
                return Fatal(error)
            if self.responsive:
                return Success(True)
            return NotYet(f"{self.base_url} が応答しません")

        try:
            retry_until(check, timeout, interval=0.05, max_interval=0.1)
        except WaitTimeoutError as exc:
            self._ready_failed = True
            raise ServerStartupError(
                f"サーバー '{self.server_name}' が {timeout:g} 秒以内に応答しませんでした: "
                f"{self.base_url}"
            ) from exc
        logger.info("サーバー '%s' が応答可能になりました: %s", self.server_name, self.base_url)

    # -------------------------------------------------------------------
    # 停止・状態
    # -------------------------------------------------------------------

    def stop(self) -> None:
        """サーバーを停止する。

        ファクトリが stop() または shutdown() を持つリスナーを返した場合に呼び出す。
        ファクトリがまだ戻っていない場合は、戻った時点で起動スレッドが停止する。
        ブロックするファクトリは停止できないため、プロセス終了まで残る。
        """
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
            listener = self._listener
        if listener is None:
            logger.debug("サーバー '%s' は起動完了後に停止します", self.server_name)
            return
        self._stop_listener(listener)

    def _stop_listener(self, listener: Any) -> None:
        """リスナーの stop() または shutdown() を呼び出す。"""
        for method_name in ("stop", "shutdown"):
            method = getattr(listener, method_name, None)
            if callable(method):
                method()
                logger.info("サーバー '%s' を停止しました: %s", self.server_name, self.base_url)
                return
        logger.debug(
            "サーバー '%s' は停止手段を持たないため、プロセス終了まで残ります", self.server_name,
        )

    def wait_for_pending_requests(self, timeout: float = PENDING_REQUESTS_TIMEOUT) -> None:
        """処理中のリクエストが全て完了するまで待機する。

        Raises:
            WaitTimeoutError: timeout 秒以内に完了しなかった場合
        """

        def check() -> CheckResult:
            pending = self.middleware.pending_requests
            if pending == 0:
                return Success(None)
            return NotYet(f"処理中のリクエストが {pending} 件あります")

        retry_until(check, timeout)

    def take_error(self) -> Optional[BaseException]:
        """捕捉したアプリケーションエラーを取り出し、記録を消去する。"""
        error = self.middleware.error
        self.middleware.error = None
        return error


# ---------------------------------------------------------------------------
# ServerPool 本体
# ---------------------------------------------------------------------------

class ServerPool:
    """(アプリ識別子, サーバー名) ごとの ServerHandle を管理する。

    reuse_server が有効な場合、同じキーの稼働中ハンドルを再利用する。
    """

    def __init__(self, registry: Registry) -> None:
        self._registry = registry
        self._lock = threading.Lock()
        self._handles: dict[tuple[int, str], ServerHandle] = {}
        self._created: list[ServerHandle] = []

    def __len__(self) -> int:
        with self._lock:
            return len([h for h in self._created if not h._stopped])

    def acquire(
        self,
        app: Any,
        server_name: Optional[str] = None,
        preferred_port: Optional[int] = None,
    ) -> ServerHandle:
        """app 用のサーバーを取得する（必要なら起動する）。

        Args:
            app: テスト対象アプリケーション
            server_name: サーバー名。None の場合は config.server_name
            preferred_port: 希望ポート。None の場合は config.server_port または空きポート

        Returns:
            応答可能な ServerHandle

        Raises:
            ServerNotFoundError: サーバー名が未登録の場合
            ArgumentError: サーバーファクトリの引数が合わない場合
            ServerStartupError: 起動に失敗した場合
        """
        config = self._registry.config
        name = server_name or config.server_name
        key = (id(app), name)

        with self._lock:
            handle = self._handles.get(key)
            if config.reuse_server and handle is not None and handle.alive:
                logger.debug("サーバーを再利用します: %r", handle)
            else:
                host = config.effective_server_host
                port = preferred_port or config.server_port or find_available_port(host)
                handle = ServerHandle(self._registry, app, name, host, port)
                self._handles[key] = handle
                self._created.append(handle)

        # 起動待ちはロックの外で行う
        try:
            handle.boot()
        except ServerStartupError:
            # 起動に失敗したハンドルは次回の取得で作り直す
            handle.stop()
            with self._lock:
                if self._handles.get(key) is handle:
                    del self._handles[key]
                if handle in self._created:
                    self._created.remove(handle)
            raise
        return handle

    def release(self, handle: ServerHandle) -> None:
        """ハンドルを解放する。reuse_server が有効な場合は何もしない。"""
        if self._registry.config.reuse_server:
            return
        handle.stop()
        with self._lock:
            key = (id(handle.app), handle.server_name)
            if self._handles.get(key) is handle:
                del self._handles[key]
            if handle in self._created:
                self._created.remove(handle)

    def shutdown(self) -> None:
        """管理中の全ハンドルを停止する。"""
        with self._lock:
            handles = list(self._created)
            self._created.clear()
            self._handles.clear()
        for handle in handles:
            handle.stop()


# ---------------------------------------------------------------------------
# 組み込み "default" サーバー（uvicorn）
# ---------------------------------------------------------------------------

class UvicornListener:
    """uvicorn サーバーと実行スレッドの組。stop() で停止する。"""

    def __init__(self, server: Any, thread: threading.Thread) -> None:
        self.server = server
        self.thread = thread

    def stop(self, timeout: float = 5.0) -> None:
        self.server.should_exit = True
        self.thread.join(timeout)


def run_default_server(app: Any, port: int, host: str = "127.0.0.1") -> UvicornListener:
    """WSGI アプリケーションを uvicorn で起動する（ブロックしない）。

    Args:
        app: WSGI アプリケーション
        port: ポート
        host: バインド先ホスト

    Returns:
        stop() を持つリスナー
    """
    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        interface="wsgi",
        lifespan="off",
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name=f"uvicorn-{port}", daemon=True)
    thread.start()
    return UvicornListener(server, thread)


def default_server(app: Any, port: int, host: str = "127.0.0.1") -> Any:
    """組み込み "default" サーバーのファクトリ。run_default_server に委譲する。"""
    return run_default_server(app, port, host)
