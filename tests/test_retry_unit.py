import pytest

from keeper.trader.retry import backoff_seconds, call_with_retry, is_provider_hiccup


def test_provider_hiccup_classification():
    assert is_provider_hiccup("no backend is currently healthy to serve traffic")
    assert is_provider_hiccup("HTTP 429 Too Many Requests")
    assert is_provider_hiccup("Rate limit exceeded")
    assert not is_provider_hiccup("execution reverted")
    assert not is_provider_hiccup("")


def test_backoff_is_linear_and_capped():
    assert [backoff_seconds(a, hiccup=True) for a in (1, 2, 6, 10)] == [5, 10, 30, 30]
    assert [backoff_seconds(a, hiccup=False) for a in (1, 2, 5, 9)] == [2, 4, 10, 10]


def test_call_with_retry_returns_after_transient_failures():
    calls = {"n": 0}
    sleeps: list[float] = []

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("429 too many requests")
        return "ok"

    assert call_with_retry(flaky, "flaky", sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert sleeps == [5, 10]


def test_call_with_retry_reraises_after_attempt_ceiling():
    calls = {"n": 0}
    sleeps: list[float] = []

    def broken():
        calls["n"] += 1
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        call_with_retry(broken, "broken", max_attempts=5, sleep=sleeps.append)
    assert calls["n"] == 5
    assert sleeps == [2, 4, 6, 8]
