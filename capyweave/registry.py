"""
Registry — ドライバ・サーバーファクトリの登録・検索とプロセス全体の設定

名前付きのドライバファクトリとサーバーファクトリを管理し、
Configuration と ServerPool を所有する。Session は Registry を通じて
ドライバとサーバーを解決する。

主な構成:
  - Registry: ファクトリの登録・検索・呼び出し、設定値の操作
  - get_registry / set_registry: プロセス既定のレジストリ

ファクトリの引数の数は登録時ではなく呼び出し時に検査し、
合わない場合は ArgumentError を送出する。
"""

from __future__ import annotations

import functools
import inspect
import logging
import threading
from typing import Any, Callable, Optional, Union

from .config import Configuration, load_config_from_env
from .drivers import implements_driver, register_builtin_drivers
from .errors import (
    ArgumentError,
    ConfigurationError,
    DriverNotFoundError,
    ServerNotFoundError,
)
from .server import ServerPool, default_server

logger = logging.getLogger(__name__)

DriverFactory = Callable[[Any], Any]
ServerFactory = Callable[..., Any]

DEFAULT_SERVER_NAME = "default"


def _accepts(factory: Callable, args: tuple) -> bool:
    """factory が args で呼び出せるかをシグネチャで判定する。

    シグネチャを取得できない呼び出し可能オブジェクトは呼び出せるものとみなす。
    """
    try:
        signature = inspect.signature(factory)
    except (TypeError, ValueError):
        return True
    try:
        signature.bind(*args)
    except TypeError:
        return False
    return True


def _check_name(name: Any, kind: str) -> str:
    if not isinstance(name, str) or not name:
        raise ConfigurationError(f"{kind}名には空でない文字列を指定してください: {name!r}")
    return name


# ---------------------------------------------------------------------------
# Registry 本体
# ---------------------------------------------------------------------------

class Registry:
    """ドライバ・サーバーファクトリと設定を管理するレジストリ。

    組み込みドライバ（in_process, http, playwright, playwright_headless）と
    組み込みサーバー（default）は生成時に利用可能になる。

    使用例::

        registry = Registry()
        registry.register_driver("echo", lambda app: EchoDriver(app))
        session = Session("echo", app, registry=registry)
    """

    def __init__(self, config: Optional[Configuration] = None) -> None:
        """レジストリを初期化する。

        Args:
            config: 設定。None の場合はデフォルト値で生成する
        """
        self.config = config if config is not None else Configuration()
        self._lock = threading.RLock()
        self._drivers: dict[str, DriverFactory] = {}
        self._servers: dict[str, ServerFactory] = {}
        self._builtin_servers: dict[str, ServerFactory] = {DEFAULT_SERVER_NAME: default_server}
        self.server_pool = ServerPool(self)
        register_builtin_drivers(self)

    # -------------------------------------------------------------------
    # ドライバ
    # -------------------------------------------------------------------

    def register_driver(self, name: str, factory: DriverFactory) -> None:
        """ドライバファクトリを登録する。

        同名のファクトリが既に登録されている場合は上書きする（警告を出力）。
        既にドライバを解決済みのセッションには影響しない。

        Args:
            name: ドライバ名
            factory: (app) を受け取りドライバを返す呼び出し可能オブジェクト

        Raises:
            ConfigurationError: name が空、または factory が呼び出し可能でない場合
        """
        _check_name(name, "ドライバ")
        if not callable(factory):
            raise ConfigurationError(
                f"ドライバ '{name}' のファクトリは呼び出し可能である必要があります: "
                f"{type(factory).__name__}"
            )
        with self._lock:
            if name in self._drivers:
                logger.warning("ドライバ '%s' のファクトリを上書きします", name)
            self._drivers[name] = factory
        logger.debug("ドライバ '%s' を登録しました", name)

    def unregister_driver(self, name: str) -> None:
        """ドライバファクトリの登録を解除する。

        Raises:
            DriverNotFoundError: 未登録の場合
        """
        with self._lock:
            if name not in self._drivers:
                raise DriverNotFoundError(f"ドライバ '{name}' は登録されていません")
            del self._drivers[name]

    def driver_factory(self, name: str) -> DriverFactory:
        """名前でドライバファクトリを取得する。

        Raises:
            DriverNotFoundError: 未登録の場合
        """
        with self._lock:
            factory = self._drivers.get(name)
            if factory is None:
                registered = ", ".join(sorted(self._drivers))
                raise DriverNotFoundError(
                    f"ドライバ '{name}' は登録されていません。"
                    f"登録済みドライバ: [{registered}]"
                )
            return factory

    def build_driver(self, name: str, app: Any) -> Any:
        """ドライバファクトリを呼び出し、ドライバを生成する。

        Args:
            name: ドライバ名
            app: テスト対象アプリケーション

        Returns:
            生成されたドライバ

        Raises:
            DriverNotFoundError: 未登録の場合
            ArgumentError: ファクトリが (app) で呼び出せない場合
            ConfigurationError: 戻り値が Driver の必須メンバーを持たない場合
        """
        factory = self.driver_factory(name)
        if not _accepts(factory, (app,)):
            raise ArgumentError(
                f"ドライバ '{name}' のファクトリは (app) の 1 引数で呼び出せる必要があります"
            )
        driver = factory(app)
        if not implements_driver(driver):
            raise ConfigurationError(
                f"ドライバ '{name}' のファクトリが visit / current_url / html を持たない"
                f"オブジェクトを返しました: {type(driver).__name__}"
            )
        logger.info("ドライバ '%s' を生成しました: %r", name, driver)
        return driver

    @property
    def driver_names(self) -> list[str]:
        """登録済み全ドライバ名をソート済みリストで返す。"""
        with self._lock:
            return sorted(self._drivers)

    # -------------------------------------------------------------------
    # サーバー
    # -------------------------------------------------------------------

    def register_server(self, name: str, factory: ServerFactory) -> None:
        """サーバーファクトリを登録する。

        "default" を登録すると組み込みサーバーを検索上で隠す。

        Args:
            name: サーバー名
            factory: (app, port, host) または (app, port) を受け取る呼び出し可能オブジェクト

        Raises:
            ConfigurationError: name が空、または factory が呼び出し可能でない場合
        """
        _check_name(name, "サーバー")
        if not callable(factory):
            raise ConfigurationError(
                f"サーバー '{name}' のファクトリは呼び出し可能である必要があります: "
                f"{type(factory).__name__}"
            )
        with self._lock:
            if name in self._servers or name in self._builtin_servers:
                logger.warning("サーバー '%s' のファクトリを上書きします", name)
            self._servers[name] = factory
        logger.debug("サーバー '%s' を登録しました", name)

    def unregister_server(self, name: str) -> None:
        """サーバーファクトリの登録を解除する。

        "default" の上書き登録を解除すると組み込みサーバーに戻る。

        Raises:
            ConfigurationError: 組み込みサーバーそのものを解除しようとした場合
            ServerNotFoundError: 未登録の場合
        """
        with self._lock:
            if name in self._servers:
                del self._servers[name]
                return
            if name in self._builtin_servers:
                raise ConfigurationError(f"組み込みサーバー '{name}' は登録解除できません")
            raise ServerNotFoundError(f"サーバー '{name}' は登録されていません")

    def server_factory(self, name: Optional[str] = None) -> ServerFactory:
        """名前でサーバーファクトリを取得する。

        Args:
            name: サーバー名。None の場合は config.server_name

        Raises:
            ServerNotFoundError: 未登録の場合
        """
        if name is None:
            name = self.config.server_name
        with self._lock:
            factory = self._servers.get(name) or self._builtin_servers.get(name)
            if factory is None:
                registered = ", ".join(self._server_names_locked())
                raise ServerNotFoundError(
                    f"サーバー '{name}' は登録されていません。"
                    f"登録済みサーバー: [{registered}]"
                )
            return factory

    @property
    def server(self) -> ServerFactory:
        """現在選択中のサーバーファクトリを返す。"""
        return self.server_factory(self.config.server_name)

    def set_current_server(self, name: Union[str, Callable]) -> None:
        """使用するサーバーを名前で切り替える。

        サーバーは register_server() で名前を付けて登録してから指定する。
        名前の存在確認は最初の使用時に行う。

        Raises:
            ArgumentError: 呼び出し可能オブジェクトが渡された場合
        """
        if callable(name):
            raise ArgumentError(
                "サーバーは register_server() で名前を付けて登録し、その名前を指定してください"
            )
        self.config.server_name = name
        logger.debug("サーバーを '%s' に切り替えました", name)

    def prepare_server(self, name: str, app: Any, port: int, host: str) -> Callable[[], Any]:
        """サーバーファクトリを解決し、引数を束縛した呼び出しを返す。

        (app, port, host) で呼び出せない場合は (app, port) を試す。

        Raises:
            ServerNotFoundError: 未登録の場合
            ArgumentError: どちらの形でも呼び出せない場合
        """
        factory = self.server_factory(name)
        for args in ((app, port, host), (app, port)):
            if _accepts(factory, args):
                return functools.partial(factory, *args)
        raise ArgumentError(
            f"サーバー '{name}' のファクトリは (app, port, host) または (app, port) で"
            "呼び出せる必要があります"
        )

    def start_server(self, name: str, app: Any, port: int, host: str) -> Any:
        """サーバーファクトリを呼び出す。"""
        return self.prepare_server(name, app, port, host)()

    def _server_names_locked(self) -> list[str]:
        return sorted(set(self._servers) | set(self._builtin_servers))

    @property
    def server_names(self) -> list[str]:
        """登録済み全サーバー名（組み込み含む）をソート済みリストで返す。"""
        with self._lock:
            return self._server_names_locked()

    # -------------------------------------------------------------------
    # 設定値
    # -------------------------------------------------------------------

    def set_app_host(self, url: Optional[str]) -> None:
        """app_host を設定する。不正な URL の場合は ArgumentError。"""
        self.config.app_host = url

    def set_default_host(self, url: str) -> None:
        """default_host を設定する。不正な URL の場合は ArgumentError。"""
        self.config.default_host = url

    def set_default_max_wait_time(self, seconds: float) -> None:
        """default_max_wait_time を設定する。"""
        self.config.default_max_wait_time = seconds


# ---------------------------------------------------------------------------
# プロセス既定のレジストリ
# ---------------------------------------------------------------------------

_default_registry: Optional[Registry] = None
_default_lock = threading.Lock()


def get_registry() -> Registry:
    """プロセス既定のレジストリを返す。

    初回呼び出し時に環境変数を適用した設定で生成する。
    """
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = Registry(load_config_from_env())
        return _default_registry


def set_registry(registry: Optional[Registry]) -> None:
    """プロセス既定のレジストリを差し替える。None で次回再生成する。"""
    global _default_registry
    with _default_lock:
        _default_registry = registry
