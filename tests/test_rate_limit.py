"""Tests for the per-connection socket rate limiter."""

from src.modules.realtime.rate_limit import ConnectionRateLimiter


def test_limit_is_per_connection():
    limiter = ConnectionRateLimiter("3/minute")

    assert [limiter.hit("a") for _ in range(4)] == [True, True, True, False]
    assert limiter.hit("b") is True
    assert limiter.remaining("b") == 2


def test_reset_clears_window():
    limiter = ConnectionRateLimiter("1/minute")
    limiter.hit("a")
    assert limiter.hit("a") is False

    limiter.reset("a")

    assert limiter.hit("a") is True


def test_defaults_to_configured_limit():
    assert ConnectionRateLimiter().limit == "100/minute"
