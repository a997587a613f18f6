from ship.core.errors import ErrorCode


def test_exit_code_values_are_stable() -> None:
    assert [int(c) for c in ErrorCode] == [0, 1, 2, 3, 4, 5, 6]


def test_retryable_codes() -> None:
    assert ErrorCode.RATE_LIMITED.is_retryable
    assert ErrorCode.TIMED_OUT.is_retryable
    assert not ErrorCode.STAGE_FAILED.is_retryable
    assert not ErrorCode.CANCELLED.is_retryable


def test_str() -> None:
    assert str(ErrorCode.RATE_LIMITED) == "rate limited"
    assert ErrorCode.OK.is_success
