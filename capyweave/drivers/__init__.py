"""
ドライバモジュール

Driver Protocol と組み込みドライバを提供する。

主要エクスポート:
  - Driver: ドライバの共通 Protocol
  - BaseDriver: 任意メソッドの既定実装
  - InProcessDriver: httpx WSGITransport によるインプロセスドライバ
  - HttpDriver: ライブサーバーへの HTTP ドライバ
  - PlaywrightDriver: Playwright によるブラウザドライバ（遅延インポート）
  - register_builtin_drivers: 組み込みドライバを Registry に登録する
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import BaseDriver, Driver, implements_driver, translate_errors
from .in_process import HttpDriver, InProcessDriver

if TYPE_CHECKING:
    from ..registry import Registry

__all__ = [
    "BaseDriver",
    "Driver",
    "HttpDriver",
    "InProcessDriver",
    "implements_driver",
    "register_builtin_drivers",
    "translate_errors",
]


def register_builtin_drivers(registry: Registry) -> None:
    """組み込みドライバを registry に登録する。

    Playwright は利用時まで import しない。

    Args:
        registry: 登録先のレジストリ
    """
    config = registry.config

    def in_process(app):  # type: ignore[no-untyped-def]
        return InProcessDriver(app, base_url=config.app_host or config.default_host)

    def http(app):  # type: ignore[no-untyped-def]
        return HttpDriver(app)

    def playwright(app):  # type: ignore[no-untyped-def]
        from .browser import PlaywrightDriver

        return PlaywrightDriver(app, headless=not config.headed)

    def playwright_headless(app):  # type: ignore[no-untyped-def]
        from .browser import PlaywrightDriver

        return PlaywrightDriver(app, headless=True)

    registry.register_driver("in_process", in_process)
    registry.register_driver("http", http)
    registry.register_driver("playwright", playwright)
    registry.register_driver("playwright_headless", playwright_headless)
