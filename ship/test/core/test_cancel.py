from __future__ import annotations

import threading
import time

from ship.core.cancel import CancelToken, Deadline


def test_cancel_token_records_first_reason() -> None:
    token = CancelToken()
    assert not token.cancelled
    token.cancel("received SIGINT")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "received SIGINT"


def test_wait_returns_early_when_cancelled() -> None:
    token = CancelToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    started = time.monotonic()
    assert token.wait(5.0) is True
    assert time.monotonic() - started < 2.0
    timer.join()


def test_wait_times_out_without_cancel() -> None:
    assert CancelToken().wait(0.01) is False


def test_unbounded_deadline_never_expires() -> None:
    deadline = Deadline.after(None)
    assert deadline.remaining() is None
    assert not deadline.expired


def test_zero_deadline_is_expired() -> None:
    deadline = Deadline.after(0)
    assert deadline.remaining() == 0.0
    assert deadline.expired
