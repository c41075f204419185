"""
Waiter — 非同期に変化するアプリケーション状態に対するリトライエンジン

同期的なテストのアサーションと、クライアント側レンダリング遅延などの
非同期な状態変化を橋渡しする。check を期限まで繰り返し実行し、
「まだ満たされていない」失敗は吸収し、期限切れ時に最後の理由を送出する。

主な構成:
  - Success / NotYet / Fatal: check の結果を表すタグ付き結果
  - retry_until: 期限付きリトライループ本体
  - synchronize: 例外を送出する関数をタグ付き結果に変換してリトライする
  - Waiter: 既定待機時間とキャンセルイベントを束ねたラッパー

期限は最初の呼び出し時刻から単調時計で計測し、リトライでリセットしない。
wait=0 は「ちょうど 1 回だけ試行する」ことを意味する。
共有状態を持たないため、入れ子の待機もそれぞれ独立した期限で動作する。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, TypeVar, Union

from .errors import (
    ExpectationNotMet,
    WaitCancelledError,
    WaitTimeoutError,
    describe_reason,
)

if TYPE_CHECKING:
    from .config import Configuration

logger = logging.getLogger(__name__)

T = TypeVar("T")

# バックオフの初期間隔と上限（秒）
DEFAULT_INTERVAL = 0.01
DEFAULT_MAX_INTERVAL = 0.05


# ---------------------------------------------------------------------------
# タグ付き結果
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Success(Generic[T]):
    """check 成功。value がそのまま retry_until の戻り値になる。"""

    value: T


@dataclass(frozen=True)
class NotYet:
    """条件はまだ満たされていないが、期限内に満たされる可能性がある。

    Attributes:
        reason: 理由（文字列または例外）。期限切れ時に WaitTimeoutError に添付される
    """

    reason: Any = None


@dataclass(frozen=True)
class Fatal:
    """二度と成功しない失敗。リトライせずに error を即座に送出する。"""

    error: BaseException


CheckResult = Union[Success, NotYet, Fatal]


# ---------------------------------------------------------------------------
# リトライループ本体
# ---------------------------------------------------------------------------

def retry_until(
    check: Callable[[], CheckResult],
    wait: float,
    *,
    interval: float = DEFAULT_INTERVAL,
    max_interval: float = DEFAULT_MAX_INTERVAL,
    cancel: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
) -> Any:
    """check が成功するか期限が切れるまで繰り返し実行する。

    Args:
        check: Success / NotYet / Fatal のいずれかを返す関数
        wait: 期限（秒）。0 の場合は 1 回だけ試行する
        interval: 最初のリトライ間隔（秒）
        max_interval: リトライ間隔の上限（秒）
        cancel: セットされると待機を中断するイベント
        clock: 単調時計（テスト用に差し替え可能）
        sleep: 待機関数（テスト用に差し替え可能）。cancel 指定時は cancel.wait を使う

    Returns:
        Success.value

    Raises:
        WaitTimeoutError: 期限までに成功しなかった場合（最後の理由を保持）
        WaitCancelledError: cancel がセットされた場合
        Exception: Fatal で返されたエラー
    """
    if wait is None or wait < 0:
        raise ValueError(f"wait には 0 以上の秒数を指定してください: {wait!r}")

    start = clock()
    delay = interval
    attempts = 0

    while True:
        if cancel is not None and cancel.is_set():
            raise WaitCancelledError(
                f"待機がキャンセルされました（{attempts} 回試行）",
                attempts=attempts,
            )

        attempts += 1
        outcome = check()

        if isinstance(outcome, Success):
            if attempts > 1:
                logger.debug("check が成功しました（%d 回目）", attempts)
            return outcome.value

        if isinstance(outcome, Fatal):
            logger.debug(
                "check が致命的エラーを返しました（%d 回目）: %s",
                attempts, describe_reason(outcome.error),
            )
            raise outcome.error

        if not isinstance(outcome, NotYet):
            raise TypeError(
                "check は Success / NotYet / Fatal のいずれかを返す必要があります: "
                f"{type(outcome).__name__}"
            )

        elapsed = clock() - start
        if elapsed >= wait:
            message = (
                f"{wait:g} 秒以内に条件が満たされませんでした"
                f"（{attempts} 回試行）: {describe_reason(outcome.reason)}"
            )
            error = WaitTimeoutError(
                message, reason=outcome.reason, attempts=attempts, elapsed=elapsed,
            )
            if isinstance(outcome.reason, BaseException):
                raise error from outcome.reason
            raise error

        # 期限を越えて眠らない
        pause = min(delay, wait - elapsed)
        _pause(pause, cancel, sleep, attempts)
        delay = min(delay * 2, max_interval)


def _pause(
    seconds: float,
    cancel: Optional[threading.Event],
    sleep: Optional[Callable[[float], None]],
    attempts: int,
) -> None:
    """リトライ間隔だけ待機する。cancel がセットされたら即座に中断する。"""
    if cancel is not None:
        if cancel.wait(seconds):
            raise WaitCancelledError(
                f"待機がキャンセルされました（{attempts} 回試行）",
                attempts=attempts,
            )
        return
    (sleep or time.sleep)(seconds)


# ---------------------------------------------------------------------------
# 例外ベースの関数のアダプタ
# ---------------------------------------------------------------------------

def synchronize(
    func: Callable[[], T],
    wait: float,
    *,
    errors: tuple[type[BaseException], ...] = (ExpectationNotMet,),
    **kwargs: Any,
) -> T:
    """例外を送出する関数を retry_until で実行する。

    errors に該当する例外は NotYet、その他の例外は Fatal、
    正常終了は Success として扱う。

    Args:
        func: 実行する関数
        wait: 期限（秒）
        errors: リトライ対象とする例外クラス
        **kwargs: retry_until へ渡す追加引数

    Returns:
        func の戻り値
    """

    def check() -> CheckResult:
        try:
            return Success(func())
        except errors as exc:
            return NotYet(exc)
        except Exception as exc:
            return Fatal(exc)

    return retry_until(check, wait, **kwargs)


# ---------------------------------------------------------------------------
# Waiter 本体
# ---------------------------------------------------------------------------

class Waiter:
    """既定の待機時間とキャンセルイベントを束ねた retry_until のラッパー。

    待機時間を省略した呼び出しは、その時点の
    config.default_max_wait_time を使用する。
    """

    def __init__(
        self,
        config: Configuration,
        *,
        interval: float = DEFAULT_INTERVAL,
        max_interval: float = DEFAULT_MAX_INTERVAL,
    ) -> None:
        self._config = config
        self._interval = interval
        self._max_interval = max_interval
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        """キャンセル要求中かどうかを返す。"""
        return self._cancel.is_set()

    def cancel(self) -> None:
        """進行中の待機をキャンセルする。

        待機中でなければ次の待機が中断される。キャンセル要求は
        中断した待機が消費するため、その後の待機には影響しない。
        """
        self._cancel.set()

    def clear_cancel(self) -> None:
        """キャンセル要求を解除する。"""
        self._cancel.clear()

    def resolve_wait(self, wait: Optional[float]) -> float:
        """待機時間を確定する。None の場合は既定値を返す。"""
        if wait is None:
            return float(self._config.default_max_wait_time)
        return float(wait)

    def retry_until(self, check: Callable[[], CheckResult], wait: Optional[float] = None) -> Any:
        """既定値を補って retry_until を実行する。"""
        try:
            return retry_until(
                check,
                self.resolve_wait(wait),
                interval=self._interval,
                max_interval=self._max_interval,
                cancel=self._cancel,
            )
        except WaitCancelledError:
            self._cancel.clear()
            raise

    def synchronize(
        self,
        func: Callable[[], T],
        wait: Optional[float] = None,
        errors: tuple[type[BaseException], ...] = (ExpectationNotMet,),
    ) -> T:
        """既定値を補って synchronize を実行する。"""
        try:
            return synchronize(
                func,
                self.resolve_wait(wait),
                errors=errors,
                interval=self._interval,
                max_interval=self._max_interval,
                cancel=self._cancel,
            )
        except WaitCancelledError:
            self._cancel.clear()
            raise
