"""
インプロセスドライバ — httpx の WSGITransport 経由で WSGI アプリを直接呼び出す

サーバーを起動せず、同一プロセス内でリクエスト/レスポンスを処理する。
JavaScript は実行しない。リダイレクトは自動的に追従する。

HttpDriver は同じインターフェースで実ネットワーク越しにライブサーバーへ接続する。
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .base import BaseDriver, translate_errors

logger = logging.getLogger(__name__)


class InProcessDriver(BaseDriver):
    """WSGI アプリケーションをインプロセスで操作するドライバ。

    相対 URL は base_url（app_host または default_host）に対して解決する。

    使用例::

        driver = InProcessDriver(app, base_url="http://www.example.com")
        driver.visit("/")
        driver.html
    """

    needs_server = False

    def __init__(
        self,
        app: Any,
        base_url: str = "http://www.example.com",
        *,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(app)
        self._base_url = base_url
        self._timeout = timeout
        self._client: Optional[httpx.Client] = None
        self._response: Optional[httpx.Response] = None

    # -------------------------------------------------------------------
    # クライアント生成
    # -------------------------------------------------------------------

    def _build_client(self) -> httpx.Client:
        """httpx クライアントを生成する。"""
        if self.app is None:
            raise ValueError("InProcessDriver にはアプリケーションが必要です")
        return httpx.Client(
            transport=httpx.WSGITransport(app=self.app),
            base_url=self._base_url,
            follow_redirects=True,
            timeout=self._timeout,
        )

    @property
    def client(self) -> httpx.Client:
        """遅延生成した httpx クライアントを返す。"""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    # -------------------------------------------------------------------
    # Driver インターフェース
    # -------------------------------------------------------------------

    def visit(self, url: str) -> None:
        """url へ GET リクエストを送る。"""
        logger.debug("%s visit: %s", type(self).__name__, url)
        with translate_errors(Exception, action=f"visit({url})"):
            self._response = self.client.get(url)

    @property
    def current_url(self) -> str:
        """最後のレスポンスの URL を返す。未訪問の場合は空文字列。"""
        if self._response is None:
            return ""
        return str(self._response.url)

    @property
    def html(self) -> str:
        """最後のレスポンスのボディを返す。未訪問の場合は空文字列。"""
        if self._response is None:
            return ""
        with translate_errors(httpx.HTTPError, UnicodeDecodeError, action="html"):
            return self._response.text

    @property
    def status_code(self) -> Optional[int]:
        """最後のレスポンスのステータスコード。"""
        return self._response.status_code if self._response is not None else None

    @property
    def response_headers(self) -> dict[str, str]:
        """最後のレスポンスのヘッダー。"""
        if self._response is None:
            return {}
        return dict(self._response.headers)

    def reset(self) -> None:
        """Cookie と最後のレスポンスを破棄する。"""
        if self._client is not None:
            self._client.cookies.clear()
        self._response = None

    def quit(self) -> None:
        """httpx クライアントを閉じる。"""
        if self._client is not None:
            self._client.close()
            self._client = None
        self._response = None


class HttpDriver(InProcessDriver):
    """ライブサーバーへ実際の HTTP で接続するドライバ。

    Session が ServerHandle を起動し、その URL を絶対 URL として visit に渡す。
    """

    needs_server = True

    def __init__(self, app: Any = None, *, timeout: float = 30.0) -> None:
        super().__init__(app, base_url="", timeout=timeout)

    def _build_client(self) -> httpx.Client:
        return httpx.Client(follow_redirects=True, timeout=self._timeout)

    def visit(self, url: str) -> None:
        logger.debug("HttpDriver visit: %s", url)
        with translate_errors(httpx.HTTPError, action=f"visit({url})"):
            self._response = self.client.get(url)
