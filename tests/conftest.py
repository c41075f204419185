"""
テスト共通フィクスチャ・Hypothesis ストラテジー定義

全テストモジュールで共有するフィクスチャとデータ生成器を提供する。
プロセス既定のレジストリは汚さず、各テストは新しい Registry を使用する。
"""

from __future__ import annotations

from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from hypothesis import strategies as st

from capyweave import BaseDriver, Configuration, Registry
from capyweave.server import ServerHandle


# ---------------------------------------------------------------------------
# テスト用 WSGI アプリケーション
# ---------------------------------------------------------------------------

def make_wsgi_app():
    """テスト用の WSGI アプリケーションを生成する。

    呼び出しごとに別オブジェクト（別の識別子）を返す。

    ルート:
      /          → "Hello world!"
      /redirect  → /landed へ 302
      /landed    → "Landed"
      /cookie    → Cookie を設定して "Cookie set"
      /whoami    → 受け取った Cookie を返す
      /error     → ValueError を送出
      その他     → 404
    """

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")
        if path == "/":
            status, headers, body = "200 OK", [], b"Hello world!"
        elif path == "/redirect":
            status, headers, body = "302 Found", [("Location", "/landed")], b""
        elif path == "/landed":
            status, headers, body = "200 OK", [], b"Landed"
        elif path == "/cookie":
            status, headers, body = "200 OK", [("Set-Cookie", "user=alice; Path=/")], b"Cookie set"
        elif path == "/whoami":
            status, headers, body = "200 OK", [], environ.get("HTTP_COOKIE", "").encode()
        elif path == "/error":
            raise ValueError("アプリケーション内エラー")
        else:
            status, headers, body = "404 Not Found", [], b"Not Found"
        headers = headers + [
            ("Content-Type", "text/html; charset=utf-8"),
            ("Content-Length", str(len(body))),
        ]
        start_response(status, headers)
        return [body]

    return app


# ---------------------------------------------------------------------------
# テスト用ドライバ
# ---------------------------------------------------------------------------

class EchoDriver(BaseDriver):
    """訪問した URL を記録し、固定または順に変化するボディを返すドライバ。

    Attributes:
        visited: visit に渡された URL のリスト
        bodies: html 参照ごとに順に返すボディ（最後の要素を返し続ける）
    """

    def __init__(self, app: Any = None, body: str = "Hello world!", *, needs_server: bool = False) -> None:
        super().__init__(app)
        self.needs_server = needs_server
        self.visited: list[str] = []
        self.bodies: list[str] = [body]
        self.reset_count = 0
        self.quit_count = 0

    def visit(self, url: str) -> None:
        self.visited.append(url)

    @property
    def current_url(self) -> str:
        return self.visited[-1] if self.visited else ""

    @property
    def html(self) -> str:
        if len(self.bodies) > 1:
            return self.bodies.pop(0)
        return self.bodies[0]

    def reset(self) -> None:
        self.reset_count += 1
        self.visited.clear()

    def quit(self) -> None:
        self.quit_count += 1


class FakeClock:
    """retry_until に注入する偽の単調時計。sleep で時刻を進める。"""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> Configuration:
    """デフォルト値の Configuration。"""
    return Configuration()


@pytest.fixture
def registry(config: Configuration):
    """新しい Registry。テスト終了時に起動したサーバーを停止する。"""
    reg = Registry(config)
    yield reg
    reg.server_pool.shutdown()


@pytest.fixture
def wsgi_app():
    """テスト用 WSGI アプリケーション。"""
    return make_wsgi_app()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_responsive(monkeypatch: pytest.MonkeyPatch) -> None:
    """ServerHandle の応答確認を「ファクトリが戻ったら応答可能」に差し替える。"""
    monkeypatch.setattr(
        ServerHandle,
        "responsive",
        property(lambda self: self._boot_error is None and self._listener is not None),
    )


@pytest.fixture
def counting_server_factory():
    """呼び出し回数を数え、stop() を持つモックリスナーを返すサーバーファクトリ。"""
    listeners: list[MagicMock] = []

    def factory(app, port, host):
        listener = MagicMock(name=f"listener-{port}")
        listeners.append(listener)
        return listener

    factory.listeners = listeners  # type: ignore[attr-defined]
    return factory


# ---------------------------------------------------------------------------
# Hypothesis ストラテジー
# ---------------------------------------------------------------------------

def make_name_strategy():
    """登録名として有効な文字列を生成する Hypothesis ストラテジー。"""
    return st.from_regex(r"[a-z][a-z0-9_]{0,15}", fullmatch=True)


def make_app_strategy():
    """アプリケーションとして渡される任意の値を生成する Hypothesis ストラテジー。"""
    return st.one_of(
        st.none(),
        st.integers(),
        st.text(max_size=20),
        st.builds(object),
        st.just(make_wsgi_app()),
    )


def build_echo_factory(body: str = "Hello world!", *, needs_server: bool = False, created: Optional[list] = None):
    """EchoDriver を生成するドライバファクトリを返す。"""

    def factory(app):
        driver = EchoDriver(app, body, needs_server=needs_server)
        if created is not None:
            created.append(driver)
        return driver

    return factory
