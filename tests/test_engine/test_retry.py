"""Tests for aperture.engine.retry -- classification, backoff and the attempt loop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from aperture.engine.retry import (
    FailureKind,
    RetryController,
    calculate_delay,
    classify_exception,
    classify_status,
    parse_retry_after,
)
from aperture.exceptions import ExecutionTimeoutError, NetworkError
from aperture.models import HTTPMethod, RetryPolicy

NO_JITTER = RetryPolicy(max_attempts=3, initial_delay=0.1, max_delay=5.0, jitter=False)


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _responses(*statuses: int, headers: dict[str, str] | None = None):
    """A send callable replaying *statuses* and recording attempt numbers."""
    remaining = list(statuses)
    seen: list[int] = []

    async def send(attempt: int) -> httpx.Response:
        seen.append(attempt)
        return httpx.Response(remaining.pop(0), headers=headers or {})

    send.seen = seen  # type: ignore[attr-defined]
    return send


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyStatus:
    @pytest.mark.parametrize("status", [408, 500, 502, 503, 504, 599])
    def test_retryable(self, status: int) -> None:
        assert classify_status(status) is FailureKind.RETRYABLE

    def test_rate_limited(self) -> None:
        assert classify_status(429) is FailureKind.RATE_LIMITED
        assert FailureKind.RATE_LIMITED.is_retryable

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422, 501, 505])
    def test_terminal(self, status: int) -> None:
        assert classify_status(status) is FailureKind.TERMINAL
        assert not FailureKind.TERMINAL.is_retryable


class TestClassifyException:
    def test_connect_and_timeout_retryable(self) -> None:
        assert classify_exception(httpx.ConnectError("refused")) is FailureKind.RETRYABLE
        assert classify_exception(httpx.ReadTimeout("slow")) is FailureKind.RETRYABLE
        assert classify_exception(httpx.RemoteProtocolError("reset")) is FailureKind.RETRYABLE

    def test_protocol_and_proxy_terminal(self) -> None:
        assert classify_exception(httpx.UnsupportedProtocol("ftp")) is FailureKind.TERMINAL
        assert classify_exception(httpx.ProxyError("bad proxy")) is FailureKind.TERMINAL

    def test_other_exceptions_terminal(self) -> None:
        assert classify_exception(ValueError("x")) is FailureKind.TERMINAL


# ---------------------------------------------------------------------------
# Backoff arithmetic
# ---------------------------------------------------------------------------


class TestCalculateDelay:
    def test_exponential(self) -> None:
        assert [calculate_delay(NO_JITTER, n) for n in range(3)] == pytest.approx([0.1, 0.2, 0.4])

    def test_capped(self) -> None:
        assert calculate_delay(NO_JITTER, 20) == 5.0

    def test_jitter_adds_up_to_a_quarter(self) -> None:
        policy = NO_JITTER.model_copy(update={"jitter": True})
        assert calculate_delay(policy, 1, rng=lambda: 0.0) == pytest.approx(0.2)
        assert calculate_delay(policy, 1, rng=lambda: 1.0) == pytest.approx(0.25)

    def test_retry_after_raises_floor(self) -> None:
        assert calculate_delay(NO_JITTER, 0, retry_after=2.0) == 2.0

    def test_retry_after_capped(self) -> None:
        assert calculate_delay(NO_JITTER, 0, retry_after=60.0) == 5.0

    def test_retry_after_below_backoff_ignored(self) -> None:
        assert calculate_delay(NO_JITTER, 2, retry_after=0.1) == pytest.approx(0.4)


class TestParseRetryAfter:
    def test_seconds(self) -> None:
        assert parse_retry_after("120") == 120.0
        assert parse_retry_after(" 3 ") == 3.0

    def test_http_date(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        value = format_datetime(now + timedelta(seconds=30), usegmt=True)
        assert parse_retry_after(value, now=now) == pytest.approx(30.0)

    def test_past_date(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=now) is None

    @pytest.mark.parametrize("value", [None, "", "soon", "-5"])
    def test_unusable(self, value: str | None) -> None:
        assert parse_retry_after(value) is None


# ---------------------------------------------------------------------------
# RetryController
# ---------------------------------------------------------------------------


class TestAttemptBudget:
    def test_no_policy_single_attempt(self) -> None:
        assert RetryController(None).max_attempts == 1

    def test_idempotent_method_uses_policy(self) -> None:
        assert RetryController(NO_JITTER, method=HTTPMethod.PUT).max_attempts == 3

    def test_post_without_key_single_attempt(self) -> None:
        assert RetryController(NO_JITTER, method=HTTPMethod.POST).max_attempts == 1

    def test_post_with_key_retries(self) -> None:
        assert RetryController(NO_JITTER, idempotency_key="k1", method=HTTPMethod.POST).max_attempts == 3

    def test_force_retry(self) -> None:
        policy = NO_JITTER.model_copy(update={"force_retry": True})
        assert RetryController(policy, method=HTTPMethod.PATCH).max_attempts == 3


class TestRetryController:
    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        sleep = FakeSleep()
        send = _responses(503, 503, 200)
        controller = RetryController(NO_JITTER, sleep=sleep)

        response = await controller.run(send)

        assert response.status_code == 200
        assert controller.attempts == 3
        assert send.seen == [1, 2, 3]
        assert sleep.delays == pytest.approx([0.1, 0.2])
        assert [h.status for h in controller.history] == [503, 503]
        assert all(h.kind is FailureKind.RETRYABLE for h in controller.history)

    @pytest.mark.asyncio
    async def test_terminal_status_returned_immediately(self) -> None:
        sleep = FakeSleep()
        controller = RetryController(NO_JITTER, sleep=sleep)
        response = await controller.run(_responses(404))
        assert response.status_code == 404
        assert controller.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_last_retryable_response_returned(self) -> None:
        controller = RetryController(NO_JITTER, sleep=FakeSleep())
        response = await controller.run(_responses(500, 502, 503))
        assert response.status_code == 503
        assert controller.attempts == 3
        assert controller.last_status == 503

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self) -> None:
        sleep = FakeSleep()
        controller = RetryController(NO_JITTER, sleep=sleep)
        await controller.run(_responses(429, 200, headers={"Retry-After": "2"}))
        assert sleep.delays == [2.0]
        assert controller.history[0].kind is FailureKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_post_without_key_not_retried(self) -> None:
        send = _responses(503, 200)
        controller = RetryController(NO_JITTER, method=HTTPMethod.POST, sleep=FakeSleep())
        response = await controller.run(send)
        assert response.status_code == 503
        assert send.seen == [1]

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self) -> None:
        errors = [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")]

        async def send(attempt: int) -> httpx.Response:
            if errors:
                raise errors.pop(0)
            return httpx.Response(200)

        controller = RetryController(NO_JITTER, sleep=FakeSleep())
        response = await controller.run(send)
        assert response.status_code == 200
        assert [h.error for h in controller.history] == ["refused", "slow"]

    @pytest.mark.asyncio
    async def test_transport_errors_exhausted(self) -> None:
        async def send(attempt: int) -> httpx.Response:
            raise httpx.ConnectError("refused")

        controller = RetryController(NO_JITTER.model_copy(update={"max_attempts": 2}), sleep=FakeSleep())
        with pytest.raises(NetworkError) as exc_info:
            await controller.run(send)
        assert exc_info.value.attempts == 2
        assert exc_info.value.retryable is True
        assert isinstance(controller.last_error, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_terminal_transport_error_not_retried(self) -> None:
        async def send(attempt: int) -> httpx.Response:
            raise httpx.UnsupportedProtocol("ftp://")

        controller = RetryController(NO_JITTER, sleep=FakeSleep())
        with pytest.raises(NetworkError) as exc_info:
            await controller.run(send)
        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is False


class TestDeadline:
    @pytest.mark.asyncio
    async def test_delay_beyond_deadline_raises(self) -> None:
        policy = RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=10.0, jitter=False)
        sleep = FakeSleep()
        controller = RetryController(policy, sleep=sleep, clock=lambda: 0.0, deadline=1.0)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await controller.run(_responses(503, 200))
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_expired_deadline_prevents_attempt(self) -> None:
        send = _responses(200)
        controller = RetryController(NO_JITTER, clock=lambda: 5.0, deadline=1.0)
        with pytest.raises(ExecutionTimeoutError):
            await controller.run(send)
        assert send.seen == []

    @pytest.mark.asyncio
    async def test_slow_attempt_cancelled(self) -> None:
        async def send(attempt: int) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        controller = RetryController(NO_JITTER, clock=lambda: 0.0, deadline=0.05)
        with pytest.raises(ExecutionTimeoutError):
            await controller.run(send)

    def test_remaining(self) -> None:
        assert RetryController(NO_JITTER).remaining() is None
        assert RetryController(NO_JITTER, clock=lambda: 3.0, deadline=5.0).remaining() == 2.0
