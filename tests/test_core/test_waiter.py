"""
retry_until / synchronize / Waiter のテスト

偽の単調時計（FakeClock）を注入して期限・バックオフを検証し、
キャンセルとスレッドをまたぐ動作のみ実時間で検証する。

テスト対象:
  - retry_until(): Success / NotYet / Fatal の扱い、wait=0、期限、バックオフ
  - 期限切れ時の理由の保持（__cause__）
  - キャンセル、入れ子の待機
  - synchronize(): 例外の分類
  - Waiter: 既定待機時間、キャンセル
"""

from __future__ import annotations

import threading
import time

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from capyweave import Configuration
from capyweave.errors import ExpectationNotMet, WaitCancelledError, WaitTimeoutError
from capyweave.waiter import Fatal, NotYet, Success, Waiter, retry_until, synchronize
from conftest import FakeClock


def _counting(results):
    """results を順に返し、最後の要素を返し続ける check を生成する。"""
    calls = []

    def check():
        calls.append(len(calls) + 1)
        index = min(len(calls), len(results)) - 1
        return results[index]

    return check, calls


# ---------------------------------------------------------------------------
# 基本動作
# ---------------------------------------------------------------------------

class TestRetryUntilBasics:
    """Success / NotYet / Fatal の基本動作テスト。"""

    def test_success_on_first_call(self, fake_clock: FakeClock):
        """最初の呼び出しで成功した場合、値を返し待機しないこと。"""
        check, calls = _counting([Success("done")])
        assert retry_until(check, 1.0, clock=fake_clock, sleep=fake_clock.sleep) == "done"
        assert calls == [1]
        assert fake_clock.sleeps == []

    def test_success_after_not_yet(self, fake_clock: FakeClock):
        """NotYet の後に成功した場合、その値を返すこと。"""
        check, calls = _counting([NotYet("a"), NotYet("b"), Success(42)])
        assert retry_until(check, 1.0, clock=fake_clock, sleep=fake_clock.sleep) == 42
        assert len(calls) == 3

    def test_success_value_may_be_none(self, fake_clock: FakeClock):
        """Success(None) も成功として扱うこと。"""
        check, calls = _counting([Success(None)])
        assert retry_until(check, 1.0, clock=fake_clock, sleep=fake_clock.sleep) is None
        assert len(calls) == 1

    def test_fatal_raises_immediately(self, fake_clock: FakeClock):
        """Fatal は期限に関係なく 1 回目で即座に送出されること。"""
        error = RuntimeError("壊れています")
        check, calls = _counting([Fatal(error)])
        with pytest.raises(RuntimeError) as exc_info:
            retry_until(check, 100.0, clock=fake_clock, sleep=fake_clock.sleep)
        assert exc_info.value is error
        assert calls == [1]
        assert fake_clock.now == 0.0

    def test_fatal_after_not_yet(self, fake_clock: FakeClock):
        """NotYet の後の Fatal もその時点で送出されること。"""
        check, calls = _counting([NotYet(), Fatal(KeyError("x"))])
        with pytest.raises(KeyError):
            retry_until(check, 100.0, clock=fake_clock, sleep=fake_clock.sleep)
        assert len(calls) == 2

    def test_invalid_result_raises_type_error(self):
        """タグ付き結果以外を返した場合は TypeError になること。"""
        with pytest.raises(TypeError, match="Success / NotYet / Fatal"):
            retry_until(lambda: True, 1.0)

    @pytest.mark.parametrize("wait", [-1, -0.001, None])
    def test_invalid_wait(self, wait):
        """負または None の待機時間は ValueError になること。"""
        with pytest.raises(ValueError):
            retry_until(lambda: Success(1), wait)


# ---------------------------------------------------------------------------
# 期限
# ---------------------------------------------------------------------------

class TestRetryUntilDeadline:
    """期限とバックオフのテスト。"""

    def test_zero_wait_tries_exactly_once(self, fake_clock: FakeClock):
        """wait=0 の場合、ちょうど 1 回だけ試行すること。"""
        check, calls = _counting([NotYet("まだ")])
        with pytest.raises(WaitTimeoutError) as exc_info:
            retry_until(check, 0, clock=fake_clock, sleep=fake_clock.sleep)
        assert calls == [1]
        assert exc_info.value.attempts == 1
        assert fake_clock.sleeps == []

    def test_zero_wait_returns_success(self, fake_clock: FakeClock):
        """wait=0 でも 1 回目が成功すれば値を返すこと。"""
        check, _ = _counting([Success("ok")])
        assert retry_until(check, 0, clock=fake_clock, sleep=fake_clock.sleep) == "ok"

    def test_times_out_only_after_deadline(self, fake_clock: FakeClock):
        """NotYet を返し続ける場合、期限を過ぎてから複数回試行の末に送出すること。"""
        check, calls = _counting([NotYet("まだ")])
        with pytest.raises(WaitTimeoutError) as exc_info:
            retry_until(check, 1.0, clock=fake_clock, sleep=fake_clock.sleep)
        error = exc_info.value
        assert error.elapsed >= 1.0
        assert fake_clock.now >= 1.0
        assert len(calls) > 1
        assert error.attempts == len(calls)

    def test_never_sleeps_past_deadline(self, fake_clock: FakeClock):
        """最後の待機は期限の残り時間に切り詰められること。"""
        check, _ = _counting([NotYet()])
        with pytest.raises(WaitTimeoutError):
            retry_until(check, 0.035, clock=fake_clock, sleep=fake_clock.sleep)
        assert fake_clock.now == pytest.approx(0.035)
        assert fake_clock.sleeps[-1] == pytest.approx(0.005)

    def test_backoff_doubles_up_to_cap(self, fake_clock: FakeClock):
        """待機間隔は 10ms から倍々に増え、50ms で頭打ちになること。"""
        check, _ = _counting([NotYet()])
        with pytest.raises(WaitTimeoutError):
            retry_until(check, 0.5, clock=fake_clock, sleep=fake_clock.sleep)
        assert fake_clock.sleeps[:5] == pytest.approx([0.01, 0.02, 0.04, 0.05, 0.05])
        assert max(fake_clock.sleeps) == pytest.approx(0.05)

    def test_deadline_measured_from_first_attempt(self):
        """実時間でも最初の試行から計測して期限を守ること。"""
        check, calls = _counting([NotYet()])
        started = time.monotonic()
        with pytest.raises(WaitTimeoutError):
            retry_until(check, 0.2)
        assert time.monotonic() - started >= 0.2
        assert len(calls) > 1

    @given(wait=st.floats(min_value=0, max_value=5, allow_nan=False))
    @settings(max_examples=50, deadline=None)
    def test_timeout_never_early(self, wait: float):
        """任意の期限に対し、期限前に諦めず、少なくとも 1 回は試行すること。"""
        clock = FakeClock()
        check, calls = _counting([NotYet()])
        with pytest.raises(WaitTimeoutError) as exc_info:
            retry_until(check, wait, clock=clock, sleep=clock.sleep)
        assert exc_info.value.elapsed >= wait
        assert len(calls) >= 1
        if wait == 0:
            assert len(calls) == 1


# ---------------------------------------------------------------------------
# 期限切れ時の理由
# ---------------------------------------------------------------------------

class TestTimeoutReason:
    """WaitTimeoutError が最後の理由を保持することのテスト。"""

    def test_last_string_reason(self, fake_clock: FakeClock):
        """文字列の理由は reason とメッセージに含まれること。"""
        check, _ = _counting([NotYet("1 回目"), NotYet("最後の理由")])
        with pytest.raises(WaitTimeoutError, match="最後の理由") as exc_info:
            retry_until(check, 0.1, clock=fake_clock, sleep=fake_clock.sleep)
        assert exc_info.value.reason == "最後の理由"
        assert exc_info.value.__cause__ is None

    def test_exception_reason_is_chained(self, fake_clock: FakeClock):
        """例外の理由は __cause__ として連結されること。"""
        reason = ExpectationNotMet("ボタンが見つかりません")
        check, _ = _counting([NotYet(reason)])
        with pytest.raises(WaitTimeoutError) as exc_info:
            retry_until(check, 0.1, clock=fake_clock, sleep=fake_clock.sleep)
        assert exc_info.value.__cause__ is reason
        assert "ExpectationNotMet" in str(exc_info.value)

    def test_timeout_is_assertion_error(self, fake_clock: FakeClock):
        """WaitTimeoutError はテストフレームワーク上は失敗として扱われること。"""
        with pytest.raises(AssertionError):
            retry_until(lambda: NotYet(), 0, clock=fake_clock, sleep=fake_clock.sleep)


# ---------------------------------------------------------------------------
# キャンセル・入れ子
# ---------------------------------------------------------------------------

class TestCancellation:
    """キャンセルのテスト。"""

    def test_cancelled_before_start(self):
        """開始前にキャンセル済みなら check を呼ばずに送出すること。"""
        cancel = threading.Event()
        cancel.set()
        check, calls = _counting([NotYet()])
        with pytest.raises(WaitCancelledError) as exc_info:
            retry_until(check, 10.0, cancel=cancel)
        assert calls == []
        assert exc_info.value.attempts == 0

    def test_cancelled_while_waiting(self):
        """待機中のキャンセルはタイムアウトではなく WaitCancelledError になること。"""
        cancel = threading.Event()
        check, calls = _counting([NotYet()])
        timer = threading.Timer(0.1, cancel.set)
        started = time.monotonic()
        timer.start()
        try:
            with pytest.raises(WaitCancelledError):
                retry_until(check, 10.0, cancel=cancel)
        finally:
            timer.cancel()
        assert time.monotonic() - started < 5.0
        assert len(calls) >= 1

    def test_cancel_is_not_a_timeout(self):
        """WaitCancelledError は WaitTimeoutError ではないこと。"""
        assert not issubclass(WaitCancelledError, WaitTimeoutError)


class TestNestedWaits:
    """入れ子の待機のテスト。"""

    def test_inner_and_outer_deadlines_are_independent(self, fake_clock: FakeClock):
        """内側の期限切れは外側の NotYet となり、外側は自身の期限で再試行すること。"""
        outer_calls = []
        inner_attempts = []

        def inner_check():
            return Success("ready") if len(outer_calls) >= 3 else NotYet("内側まだ")

        def outer_check():
            outer_calls.append(1)
            try:
                return Success(retry_until(inner_check, 0, clock=fake_clock, sleep=fake_clock.sleep))
            except WaitTimeoutError as exc:
                inner_attempts.append(exc.attempts)
                return NotYet(exc)

        result = retry_until(outer_check, 1.0, clock=fake_clock, sleep=fake_clock.sleep)
        assert result == "ready"
        assert len(outer_calls) == 3
        assert inner_attempts == [1, 1]


# ---------------------------------------------------------------------------
# synchronize
# ---------------------------------------------------------------------------

class TestSynchronize:
    """synchronize() の例外分類テスト。"""

    def test_retries_expectation_errors(self, fake_clock: FakeClock):
        """ExpectationNotMet はリトライされること。"""
        calls = []

        def func():
            calls.append(1)
            if len(calls) < 3:
                raise ExpectationNotMet("まだ")
            return "ok"

        assert synchronize(func, 1.0, clock=fake_clock, sleep=fake_clock.sleep) == "ok"
        assert len(calls) == 3

    def test_other_errors_are_fatal(self, fake_clock: FakeClock):
        """その他の例外はリトライせず即座に送出されること。"""
        calls = []

        def func():
            calls.append(1)
            raise ValueError("壊れています")

        with pytest.raises(ValueError):
            synchronize(func, 10.0, clock=fake_clock, sleep=fake_clock.sleep)
        assert len(calls) == 1

    def test_custom_retry_errors(self, fake_clock: FakeClock):
        """errors で指定した例外をリトライ対象にできること。"""

        def func():
            raise KeyError("x")

        with pytest.raises(WaitTimeoutError) as exc_info:
            synchronize(func, 0.1, errors=(KeyError,), clock=fake_clock, sleep=fake_clock.sleep)
        assert isinstance(exc_info.value.__cause__, KeyError)


# ---------------------------------------------------------------------------
# Waiter
# ---------------------------------------------------------------------------

class TestWaiter:
    """Waiter のテスト。"""

    def test_default_wait_from_config(self):
        """wait 省略時は config.default_max_wait_time を使うこと。"""
        config = Configuration(default_max_wait_time=3.5)
        waiter = Waiter(config)
        assert waiter.resolve_wait(None) == 3.5
        assert waiter.resolve_wait(1) == 1.0

    def test_default_wait_follows_config_changes(self):
        """設定変更後の待機は新しい既定値を使うこと。"""
        config = Configuration()
        waiter = Waiter(config)
        config.default_max_wait_time = 0
        check, calls = _counting([NotYet()])
        with pytest.raises(WaitTimeoutError):
            waiter.retry_until(check)
        assert len(calls) == 1

    def test_synchronize_with_default_wait(self):
        """Waiter.synchronize が成功値を返すこと。"""
        waiter = Waiter(Configuration())
        assert waiter.synchronize(lambda: "value") == "value"

    def test_cancel_and_clear(self):
        """cancel 後の待機は 1 回だけキャンセルされ、clear_cancel で要求を解除できること。"""
        waiter = Waiter(Configuration())
        waiter.cancel()
        assert waiter.cancelled
        with pytest.raises(WaitCancelledError):
            waiter.retry_until(lambda: Success(1))
        # 中断した待機がキャンセル要求を消費する
        assert not waiter.cancelled
        waiter.cancel()
        waiter.clear_cancel()
        assert not waiter.cancelled
        assert waiter.retry_until(lambda: Success(1)) == 1
