"""Tests for the retry policies shared by token acquisition and STK push."""

import pytest

from app.engine.retry import backoff_delay, push_policy, token_policy, with_retry
from app.gateway.errors import ConfigError, GatewayError, NetworkError


class TestBackoff:
    def test_doubles_from_base(self):
        assert [backoff_delay(n, 1.0, 8.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        """Attempt 5 would be 16s uncapped."""
        assert backoff_delay(5, base=1.0, cap=8.0) == 8.0

    def test_cap_in_milliseconds(self):
        assert backoff_delay(5, base=1000, cap=8000) == 8000

    def test_attempt_zero(self):
        assert backoff_delay(0) == 0.0


class TestPolicies:
    def test_push_defaults_to_no_retries(self):
        assert push_policy().max_retries == 0

    def test_push_retries_network_only(self):
        policy = push_policy(2)
        assert policy.should_retry(NetworkError("reset"), 1)
        assert not policy.should_retry(GatewayError("rejected"), 1)

    def test_token_retries_network_only(self):
        policy = token_policy(2)
        assert policy.should_retry(NetworkError("timeout"), 1)
        assert policy.should_retry(NetworkError("timeout"), 2)
        assert not policy.should_retry(NetworkError("timeout"), 3)
        assert not policy.should_retry(GatewayError("500"), 1)

    def test_config_error_never_retried(self):
        assert not token_policy(5).should_retry(ConfigError("missing"), 1)

    def test_negative_retries_clamped(self):
        assert push_policy(-3).max_retries == 0


class _Flaky:
    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


async def _no_sleep(_):
    return None


@pytest.mark.asyncio
async def test_with_retry_recovers():
    func = _Flaky([NetworkError("a"), NetworkError("b")])
    assert await with_retry(push_policy(2), func, sleep=_no_sleep) == "ok"
    assert func.calls == 3


@pytest.mark.asyncio
async def test_with_retry_exhausts():
    func = _Flaky([NetworkError("a"), NetworkError("b"), NetworkError("c")])
    with pytest.raises(NetworkError, match="c"):
        await with_retry(push_policy(2), func, sleep=_no_sleep)
    assert func.calls == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_gateway_error_for_push():
    func = _Flaky([GatewayError("insufficient balance")])
    with pytest.raises(GatewayError):
        await with_retry(push_policy(3), func, sleep=_no_sleep)
    assert func.calls == 1


@pytest.mark.asyncio
async def test_with_retry_sleeps_with_backoff():
    slept = []

    async def record(seconds):
        slept.append(seconds)

    func = _Flaky([NetworkError("a"), NetworkError("b"), NetworkError("c")])
    await with_retry(token_policy(3, base_delay=1.0, max_delay=3.0), func, sleep=record)
    assert slept == [1.0, 2.0, 3.0]
