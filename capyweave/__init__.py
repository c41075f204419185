"""
capyweave — ドライバ非依存の受け入れテストハーネス

テストコードは Session に遷移・アサーションのコマンドを発行し、
差し替え可能なドライバ（インプロセス / HTTP / Playwright）が実際の操作を行う。
ライブ HTTP エンドポイントが必要な場合はサーバーがアプリケーションを公開する。

主要エクスポート:
  - Session / SessionState: テストが操作するセッション
  - Registry / get_registry: ドライバ・サーバーの登録と設定
  - Configuration: プロセス全体の設定値
  - retry_until / synchronize / Success / NotYet / Fatal: 待機エンジン
  - register_driver / register_server: 既定レジストリへの登録
"""

from __future__ import annotations

from .config import Configuration, load_config_file, load_config_from_env
from .drivers import BaseDriver, Driver, HttpDriver, InProcessDriver
from .errors import (
    ArgumentError,
    CapyweaveError,
    ConfigurationError,
    DriverNotFoundError,
    DriverOperationError,
    ExpectationNotMet,
    ServerNotFoundError,
    ServerStartupError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .registry import Registry, get_registry, set_registry
from .server import ServerHandle, ServerPool, run_default_server
from .session import Session, SessionState
from .waiter import Fatal, NotYet, Success, Waiter, retry_until, synchronize

__all__ = [
    "ArgumentError",
    "BaseDriver",
    "CapyweaveError",
    "Configuration",
    "ConfigurationError",
    "Driver",
    "DriverNotFoundError",
    "DriverOperationError",
    "ExpectationNotMet",
    "Fatal",
    "HttpDriver",
    "InProcessDriver",
    "NotYet",
    "Registry",
    "ServerHandle",
    "ServerNotFoundError",
    "ServerPool",
    "ServerStartupError",
    "Session",
    "SessionState",
    "Success",
    "WaitCancelledError",
    "WaitTimeoutError",
    "Waiter",
    "get_registry",
    "load_config_file",
    "load_config_from_env",
    "register_driver",
    "register_server",
    "retry_until",
    "run_default_server",
    "set_registry",
    "synchronize",
]


def register_driver(name, factory):  # type: ignore[no-untyped-def]
    """既定レジストリにドライバファクトリを登録する。"""
    get_registry().register_driver(name, factory)


def register_server(name, factory):  # type: ignore[no-untyped-def]
    """既定レジストリにサーバーファクトリを登録する。"""
    get_registry().register_server(name, factory)
