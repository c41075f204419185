"""
CLI エントリポイント — Typer ベースのコマンドラインインターフェース

capyweave コマンドとして以下のサブコマンドを提供する:
  - drivers: 登録済みドライバ・サーバーの一覧
  - config: 有効な設定値の表示（環境変数 → 設定ファイルの順で適用）
  - serve: WSGI アプリケーションをサーバーで起動し、中断されるまで待機
"""

from __future__ import annotations

import importlib
import logging
import threading
from pathlib import Path
from typing import Any, Optional

import typer

from .config import Configuration, load_config_file, load_config_from_env
from .errors import CapyweaveError
from .registry import Registry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "capyweave — ドライバ非依存の受け入れテストハーネス\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


def _load_config(config_file: Optional[Path]) -> Configuration:
    """環境変数と設定ファイルから Configuration を構築する。"""
    config = load_config_from_env()
    if config_file is not None:
        config = load_config_file(config_file, config)
    return config


def _import_app(target: str) -> Any:
    """"module:attr" 形式の文字列からアプリケーションを読み込む。"""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"MODULE:ATTR の形式で指定してください: {target}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"モジュール {module_name} を読み込めません: {exc}") from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise typer.BadParameter(f"{module_name} に {attr} がありません") from exc


def _wait_forever() -> None:
    """Ctrl-C まで待機する。"""
    threading.Event().wait()


# ---------------------------------------------------------------------------
# drivers コマンド
# ---------------------------------------------------------------------------

@app.command("drivers")
def list_drivers() -> None:
    """登録済みドライバとサーバーの一覧を表示する。"""
    registry = Registry(load_config_from_env())

    typer.echo("[drivers]")
    for name in registry.driver_names:
        marker = " (default)" if name == registry.config.default_driver else ""
        typer.echo(f"  {name}{marker}")

    typer.echo("\n[servers]")
    for name in registry.server_names:
        marker = " (current)" if name == registry.config.server_name else ""
        typer.echo(f"  {name}{marker}")


# ---------------------------------------------------------------------------
# config コマンド
# ---------------------------------------------------------------------------

@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="YAML 設定ファイル",
    ),
) -> None:
    """有効な設定値を表示する。"""
    try:
        config = _load_config(config_file)
    except (CapyweaveError, FileNotFoundError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    for name, value in config.model_dump().items():
        if name == "server_errors":
            value = ", ".join(cls.__name__ for cls in value)
        typer.echo(f"{name:24s} {value}")


# ---------------------------------------------------------------------------
# serve コマンド
# ---------------------------------------------------------------------------

@app.command()
def serve(
    target: str = typer.Argument(..., help="WSGI アプリケーション（MODULE:ATTR）"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="サーバー名"),
    host: Optional[str] = typer.Option(None, "--host", help="バインド先ホスト"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="ポート"),
    config_file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="YAML 設定ファイル",
    ),
) -> None:
    """WSGI アプリケーションをサーバーで起動し、Ctrl-C まで待機する。"""
    wsgi_app = _import_app(target)

    try:
        config = _load_config(config_file)
        if server is not None:
            config.server_name = server
        if host is not None:
            config.server_host = host
        registry = Registry(config)
        handle = registry.server_pool.acquire(wsgi_app, preferred_port=port)
    except (CapyweaveError, FileNotFoundError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"起動しました: {handle.base_url}（Ctrl-C で終了）")
    try:
        _wait_forever()
    except KeyboardInterrupt:
        typer.echo("終了します")
    finally:
        registry.server_pool.shutdown()


if __name__ == "__main__":
    app()
