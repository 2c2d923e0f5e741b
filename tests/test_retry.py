from __future__ import annotations

import pytest

from app.utils.retry import with_retry


def test_returns_first_success():
    calls = []

    def fn():
        calls.append(1)
        if len(calls) < 2:
            raise ConnectionError("blip")
        return "ok"

    delays = []
    assert with_retry(fn, max_retries=3, initial_delay=0.5, sleep=delays.append) == "ok"
    assert delays == [0.5]


def test_reraises_after_last_attempt():
    delays = []

    def fn():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        with_retry(fn, max_retries=3, initial_delay=1.0, sleep=delays.append)
    assert delays == [1.0, 2.0]


def test_non_retryable_error_propagates_immediately():
    delays = []

    def fn():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        with_retry(fn, retry_on=(ConnectionError,), sleep=delays.append)
    assert delays == []


def test_retry_if_stops_on_permanent_error():
    calls = []
    delays = []

    def fn():
        calls.append(1)
        raise ConnectionError("refused for good")

    with pytest.raises(ConnectionError):
        with_retry(fn, retry_if=lambda e: "good" not in str(e), sleep=delays.append)
    assert len(calls) == 1
    assert delays == []
