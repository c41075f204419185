"""
設定 — プロセス全体の構成値と、環境変数・YAML ファイルからの読み込み

Registry が保持する Configuration は Pydantic v2 モデルとして定義し、
代入時検証（validate_assignment）により不正な値を拒否する。
検証に失敗した代入は ArgumentError となり、以前の値はそのまま残る。

環境変数一覧:
  CAPYWEAVE_DEFAULT_MAX_WAIT_TIME : 既定の待機時間（秒, デフォルト: 2）
  CAPYWEAVE_APP_HOST              : テスト対象のホスト URL（デフォルト: なし）
  CAPYWEAVE_DEFAULT_HOST          : 既定ホスト URL（デフォルト: http://www.example.com）
  CAPYWEAVE_REUSE_SERVER          : サーバー再利用（true/false, デフォルト: true）
  CAPYWEAVE_SERVER                : 使用するサーバー名（デフォルト: default）
  CAPYWEAVE_SERVER_HOST           : サーバーのバインド先ホスト
  CAPYWEAVE_SERVER_PORT           : サーバーのポート
  CAPYWEAVE_DEFAULT_DRIVER        : 既定のドライバ名（デフォルト: in_process）
  CAPYWEAVE_HEADED                : ブラウザ表示モード（true/false, デフォルト: false）
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import ArgumentError, ConfigurationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 環境変数キー定数
# ---------------------------------------------------------------------------

_ENV_DEFAULT_MAX_WAIT_TIME = "CAPYWEAVE_DEFAULT_MAX_WAIT_TIME"
_ENV_APP_HOST = "CAPYWEAVE_APP_HOST"
_ENV_DEFAULT_HOST = "CAPYWEAVE_DEFAULT_HOST"
_ENV_REUSE_SERVER = "CAPYWEAVE_REUSE_SERVER"
_ENV_SERVER = "CAPYWEAVE_SERVER"
_ENV_SERVER_HOST = "CAPYWEAVE_SERVER_HOST"
_ENV_SERVER_PORT = "CAPYWEAVE_SERVER_PORT"
_ENV_DEFAULT_DRIVER = "CAPYWEAVE_DEFAULT_DRIVER"
_ENV_HEADED = "CAPYWEAVE_HEADED"

# 環境変数 → フィールド名
_ENV_FIELDS: dict[str, str] = {
    _ENV_DEFAULT_MAX_WAIT_TIME: "default_max_wait_time",
    _ENV_APP_HOST: "app_host",
    _ENV_DEFAULT_HOST: "default_host",
    _ENV_REUSE_SERVER: "reuse_server",
    _ENV_SERVER: "server_name",
    _ENV_SERVER_HOST: "server_host",
    _ENV_SERVER_PORT: "server_port",
    _ENV_DEFAULT_DRIVER: "default_driver",
    _ENV_HEADED: "headed",
}

_BOOL_FIELDS = {"reuse_server", "headed"}


def is_absolute_url(value: str) -> bool:
    """スキームとホストを持つ絶対 URL かどうかを判定する。"""
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


# ---------------------------------------------------------------------------
# 設定モデル
# ---------------------------------------------------------------------------

class Configuration(BaseModel):
    """プロセス全体の構成値。

    Attributes:
        default_max_wait_time: 待機の既定期限（秒）
        app_host: テスト対象アプリケーションのホスト URL（None でサーバー URL を使用）
        default_host: サーバーを使わないドライバが相対 URL を解決する既定ホスト
        reuse_server: 同一アプリケーションのサーバーをセッション間で再利用するか
        server_name: 使用するサーバーの登録名
        server_host: サーバーのバインド先ホスト（None で 127.0.0.1）
        server_port: サーバーのポート（None で空きポートを自動選択）
        server_startup_timeout: サーバー起動の応答待ち猶予（秒）
        run_server: サーバーを起動するか（False で app_host 等の外部ホストを使用）
        always_include_port: 訪問 URL にサーバーのポートを常に付与するか
        raise_server_errors: サーバー内で発生したエラーを reset 時に再送出するか
        server_errors: 再送出の対象とする例外クラス
        default_driver: ドライバ名を省略したセッションが使用するドライバ
        headed: ブラウザドライバでウィンドウを表示するか
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    default_max_wait_time: float = 2.0
    app_host: Optional[str] = None
    default_host: str = "http://www.example.com"
    reuse_server: bool = True
    server_name: str = Field(default="default", min_length=1)
    server_host: Optional[str] = None
    server_port: Optional[int] = Field(default=None, ge=0, le=65535)
    server_startup_timeout: float = Field(default=10.0, ge=0)
    run_server: bool = True
    always_include_port: bool = False
    raise_server_errors: bool = True
    server_errors: tuple[type[BaseException], ...] = (Exception,)
    default_driver: str = Field(default="in_process", min_length=1)
    headed: bool = False

    @field_validator("app_host")
    @classmethod
    def _validate_app_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not is_absolute_url(value):
            raise ValueError(
                f"app_host には URL を指定してください（例: http://www.example.com）: {value}"
            )
        return value

    @field_validator("default_host")
    @classmethod
    def _validate_default_host(cls, value: str) -> str:
        if not is_absolute_url(value):
            raise ValueError(
                f"default_host には URL を指定してください（例: http://www.example.com）: {value}"
            )
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        """代入時検証の失敗を ArgumentError に変換する。"""
        if name.startswith("_"):
            super().__setattr__(name, value)
            return
        if name not in type(self).model_fields:
            raise ArgumentError(f"未知の設定項目です: {name}")
        try:
            super().__setattr__(name, value)
        except ValidationError as exc:
            details = "; ".join(err["msg"] for err in exc.errors())
            raise ArgumentError(f"{name} の値が不正です: {details}") from exc

    @contextmanager
    def using_wait_time(self, seconds: float) -> Iterator[None]:
        """ブロック内だけ default_max_wait_time を差し替える。

        使用例::

            with config.using_wait_time(10):
                session.assert_text("完了")
        """
        previous = self.default_max_wait_time
        self.default_max_wait_time = seconds
        try:
            yield
        finally:
            self.default_max_wait_time = previous

    @property
    def effective_server_host(self) -> str:
        """サーバーのバインド先ホストを返す（未設定時は 127.0.0.1）。"""
        return self.server_host or "127.0.0.1"


# ---------------------------------------------------------------------------
# 環境変数からの読み込み
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    """文字列を bool に変換する。

    Args:
        value: "true", "1", "yes" → True、それ以外 → False

    Returns:
        変換結果
    """
    return value.lower() in ("true", "1", "yes")


def load_config_from_env(config: Optional[Configuration] = None) -> Configuration:
    """環境変数を Configuration に適用する。

    設定されていない環境変数は既存の値（またはデフォルト値）を使用する。
    不正な値は警告を出力してスキップする。

    Args:
        config: 適用先の設定。None の場合は新規に生成する

    Returns:
        環境変数を適用した設定
    """
    if config is None:
        config = Configuration()

    for env_key, field_name in _ENV_FIELDS.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key]
        value: Any = _parse_bool(raw) if field_name in _BOOL_FIELDS else raw
        try:
            setattr(config, field_name, value)
        except ArgumentError as exc:
            logger.warning("%s の値が不正なためスキップします: %s", env_key, exc)

    logger.debug("環境変数から設定を読み込みました: %s", config)
    return config


# ---------------------------------------------------------------------------
# YAML ファイルからの読み込み
# ---------------------------------------------------------------------------

def load_config_file(
    path: Union[str, Path], config: Optional[Configuration] = None
) -> Configuration:
    """YAML 設定ファイルを Configuration に適用する。

    ファイルはトップレベルがマッピングである必要がある。
    キーは Configuration のフィールド名（server_name は server でも可）。

    Args:
        path: YAML ファイルのパス
        config: 適用先の設定。None の場合は新規に生成する

    Returns:
        ファイルの内容を適用した設定

    Raises:
        FileNotFoundError: ファイルが存在しない場合
        ConfigurationError: YAML 構文エラー、マッピング以外、未知のキーの場合
        ArgumentError: 値が不正な場合
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"設定ファイルが見つかりません: {path}")

    yaml = YAML(typ="safe")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f)
    except YAMLError as exc:
        line_info = ""
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
            line_info = f" (行 {mark.line + 1}, 列 {mark.column + 1})"
        raise ConfigurationError(f"YAML 構文エラー{line_info}: {exc}") from exc

    if config is None:
        config = Configuration()
    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"設定ファイルのトップレベルはマッピングである必要があります: {path}"
        )

    fields = Configuration.model_fields
    for key, value in data.items():
        name = "server_name" if key == "server" else str(key)
        if name not in fields or name == "server_errors":
            raise ConfigurationError(f"未知の設定キーです: {key}（{path}）")
        setattr(config, name, value)

    logger.info("設定ファイルを読み込みました: %s", path)
    return config
