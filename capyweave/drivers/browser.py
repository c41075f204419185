"""
Playwright ドライバ — 実ブラウザ（Chromium）でライブサーバーを操作する

Playwright の同期 API を使用する。ブラウザは最初の操作時に遅延起動し、
quit() で Browser と Playwright を終了する。
Playwright の例外は DriverOperationError に変換して送出する。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from .base import BaseDriver, translate_errors

if TYPE_CHECKING:
    from playwright.sync_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)


def _playwright_error() -> type[BaseException]:
    """Playwright の基底例外クラスを返す（遅延インポート）。"""
    from playwright.sync_api import Error

    return Error


class PlaywrightDriver(BaseDriver):
    """Playwright でブラウザを操作するドライバ。

    Attributes:
        headless: True でウィンドウを表示しない
        viewport_width: ビューポート幅
        viewport_height: ビューポート高さ
    """

    needs_server = True

    def __init__(
        self,
        app: Any = None,
        *,
        headless: bool = True,
        viewport_width: int = 1280,
        viewport_height: int = 720,
    ) -> None:
        super().__init__(app)
        self.headless = headless
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self._pw_instance: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    # -------------------------------------------------------------------
    # ブラウザ起動
    # -------------------------------------------------------------------

    @property
    def page(self) -> Page:
        """Page を返す。未起動の場合はブラウザを起動する。"""
        if self._page is None:
            self._page = self._launch()
        return self._page

    def _launch(self) -> Page:
        """Playwright を開始し、Browser / Context / Page を生成して Page を返す。"""
        from playwright.sync_api import sync_playwright

        logger.info("ブラウザを起動しています... (headless=%s)", self.headless)
        with translate_errors(_playwright_error(), action="ブラウザ起動"):
            self._pw_instance = sync_playwright().start()
            try:
                self._browser = self._pw_instance.chromium.launch(headless=self.headless)
                self._context = self._browser.new_context(
                    viewport={"width": self.viewport_width, "height": self.viewport_height},
                )
                page = self._context.new_page()
            except Exception:
                self._pw_instance.stop()
                self._pw_instance = None
                self._browser = None
                self._context = None
                raise
        logger.info("ブラウザを起動しました")
        return page

    # -------------------------------------------------------------------
    # Driver インターフェース
    # -------------------------------------------------------------------

    def visit(self, url: str) -> None:
        """url へ遷移し、DOMContentLoaded まで待機する。"""
        page = self.page
        logger.debug("PlaywrightDriver visit: %s", url)
        with translate_errors(_playwright_error(), action=f"visit({url})"):
            page.goto(url, wait_until="domcontentloaded")

    @property
    def current_url(self) -> str:
        """現在のページの URL を返す。未起動の場合は空文字列。"""
        if self._page is None:
            return ""
        return self._page.url

    @property
    def html(self) -> str:
        """現在のページの HTML を返す。未起動の場合は空文字列。"""
        if self._page is None:
            return ""
        with translate_errors(_playwright_error(), action="html"):
            return self._page.content()

    def reset(self) -> None:
        """Cookie を破棄し、about:blank へ戻る。"""
        if self._page is None or self._context is None:
            return
        with translate_errors(_playwright_error(), action="reset"):
            self._context.clear_cookies()
            self._page.goto("about:blank")

    def quit(self) -> None:
        """ブラウザを終了し、リソースをクリーンアップする。"""
        if self._pw_instance is None:
            return
        logger.info("ブラウザを終了しています...")
        try:
            with translate_errors(_playwright_error(), action="ブラウザ終了"):
                if self._browser is not None:
                    self._browser.close()
                self._pw_instance.stop()
        finally:
            self._browser = None
            self._context = None
            self._page = None
            self._pw_instance = None
            logger.info("ブラウザを終了しました")
