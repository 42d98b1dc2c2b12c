import pytest

from sdkvm.core.retry import retry_call


def test_success_without_retry():
    calls = {"n": 0}

    def func():
        calls["n"] += 1
        return "ok"

    assert retry_call(func, sleep=lambda s: None) == "ok"
    assert calls["n"] == 1


def test_success_after_failures_with_backoff():
    calls = {"n": 0}
    waits = []

    def func():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ValueError("fail")
        return "success"

    out = retry_call(func, attempts=5, delay=1.0, backoff=2.0, jitter=False, sleep=waits.append)
    assert out == "success"
    assert waits == [1.0, 2.0]


def test_last_failure_propagates():
    seen = []

    def func():
        raise ValueError("always")

    with pytest.raises(ValueError):
        retry_call(func, attempts=3, delay=0.0, sleep=lambda s: None, on_retry=lambda a, e, w: seen.append(a))
    assert seen == [1, 2]


def test_rejected_errors_are_not_retried():
    calls = {"n": 0}

    def func():
        calls["n"] += 1
        raise KeyError("permanent")

    with pytest.raises(KeyError):
        retry_call(func, attempts=5, should_retry=lambda e: not isinstance(e, KeyError), sleep=lambda s: None)
    assert calls["n"] == 1


def test_unlisted_exceptions_propagate_immediately():
    calls = {"n": 0}

    def func():
        calls["n"] += 1
        raise TypeError("bug")

    with pytest.raises(TypeError):
        retry_call(func, exceptions=(ValueError,), attempts=5, sleep=lambda s: None)
    assert calls["n"] == 1
