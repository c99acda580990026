"""Retry classification, backoff and the per-call retry loop.

This module provides:

* :class:`FailureKind` -- the closed set of failure classifications.
* :func:`classify_status` / :func:`classify_exception` -- map a response
  status or a transport exception onto a :class:`FailureKind`.
* :func:`calculate_delay` and :func:`parse_retry_after` -- backoff
  arithmetic, honouring the server's ``Retry-After`` header.
* :class:`RetryController` -- the explicit attempt loop for one logical
  call, with injectable ``sleep`` and ``clock`` so its state can be
  inspected without real delays.

Retry rules:

* connect, timeout and other transport errors are retryable;
* 408, 429 and 5xx are retryable, except 501 and 505;
* every other status is terminal;
* a non-idempotent method (POST, PATCH) is attempted once unless an
  idempotency key accompanies the request or ``force_retry`` is set.

Attempts of one call are strictly sequential. The idempotency key of the
call is fixed when the controller is created and is sent unchanged on every
attempt.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

import httpx

from aperture.exceptions import ExecutionTimeoutError, NetworkError
from aperture.models import HTTPMethod, RetryPolicy
from aperture.output import get_output

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"

_JITTER_FRACTION = 0.25
_MAX_EXPONENT = 30


class FailureKind(str, enum.Enum):
    """Classification of a failed attempt."""

    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    TERMINAL = "terminal"

    @property
    def is_retryable(self) -> bool:
        return self is not FailureKind.TERMINAL


def classify_status(status: int) -> FailureKind:
    """Classify a non-2xx response status."""
    if status == 429:
        return FailureKind.RATE_LIMITED
    if status == 408:
        return FailureKind.RETRYABLE
    if 500 <= status <= 599 and status not in (501, 505):
        return FailureKind.RETRYABLE
    return FailureKind.TERMINAL


def classify_exception(exc: Exception) -> FailureKind:
    """Classify an exception raised while sending a request."""
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.ProxyError)):
        return FailureKind.TERMINAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return FailureKind.RETRYABLE
    return FailureKind.TERMINAL


def calculate_delay(
    policy: RetryPolicy,
    attempt: int,
    retry_after: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait after the 0-based *attempt* failed.

    The exponential delay ``initial_delay * backoff_multiplier ** attempt``
    is capped at ``max_delay`` and then stretched by up to 25% when jitter is
    enabled. A server-provided *retry_after* raises the delay to at least
    that value, still capped at ``max_delay``.
    """
    exponent = min(max(attempt, 0), _MAX_EXPONENT)
    delay = min(policy.initial_delay * policy.backoff_multiplier ** exponent, policy.max_delay)
    if policy.jitter:
        delay *= 1.0 + rng() * _JITTER_FRACTION
    if retry_after is not None:
        delay = min(max(delay, retry_after), policy.max_delay)
    return delay


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header value into seconds.

    Accepts delta-seconds (``"120"``) and HTTP-dates
    (``"Wed, 21 Oct 2015 07:28:00 GMT"``). Dates in the past and unparseable
    values yield ``None``.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return seconds if seconds > 0 else None


@dataclass
class RetryAttempt:
    """Record of one failed attempt that was followed by a retry.

    Attributes:
        attempt: 1-based attempt number.
        kind: Classification of the failure.
        delay: Seconds slept before the next attempt.
        status: Response status, when a response was received.
        error: Exception text, for transport failures.
    """

    attempt: int
    kind: FailureKind
    delay: float
    status: Optional[int] = None
    error: Optional[str] = None


class RetryController:
    """Runs the attempts of one logical call.

    Args:
        policy: Backoff settings; ``None`` allows a single attempt.
        idempotency_key: The call's idempotency key, if any.
        method: HTTP method of the call, used to decide whether retrying is
            safe.
        sleep: Awaitable sleep function; :func:`asyncio.sleep` by default.
        clock: Monotonic clock in seconds; :func:`time.monotonic` by default.
        deadline: Absolute *clock* value after which no attempt or delay may
            start. ``None`` disables the deadline.
        rng: Source of jitter in ``[0, 1)``.

    After :meth:`run` returns or raises, :attr:`attempts`, :attr:`history`
    and :attr:`last_error` describe what happened.

    Example::

        controller = RetryController(RetryPolicy(), idempotency_key="k1", method=HTTPMethod.POST)
        response = await controller.run(lambda attempt: client.send(request))
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        idempotency_key: Optional[str] = None,
        method: HTTPMethod = HTTPMethod.GET,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        deadline: Optional[float] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self.idempotency_key = idempotency_key
        self.method = method
        self._sleep = sleep
        self._clock = clock
        self.deadline = deadline
        self._rng = rng

        self.attempts = 0
        self.history: list[RetryAttempt] = []
        self.last_error: Optional[Exception] = None
        self.last_status: Optional[int] = None

    @property
    def max_attempts(self) -> int:
        """Attempts allowed for this call."""
        if self.policy is None:
            return 1
        if not self.method.is_idempotent and self.idempotency_key is None and not self.policy.force_retry:
            return 1
        return self.policy.max_attempts

    async def run(self, send: Callable[[int], Awaitable[httpx.Response]]) -> httpx.Response:
        """Call *send* until it yields a final response.

        *send* receives the 1-based attempt number. A 2xx or 3xx response,
        a terminal status, or the response of the last allowed attempt is
        returned as-is; mapping non-2xx responses to errors is up to the
        caller.

        Raises:
            NetworkError: A transport failure was terminal or the last
                allowed attempt failed at the transport level.
            ExecutionTimeoutError: The deadline expired.
        """
        max_attempts = self.max_attempts
        output = get_output()

        for attempt in range(1, max_attempts + 1):
            self.attempts = attempt
            try:
                response = await self._dispatch(send, attempt)
            except (ExecutionTimeoutError, asyncio.CancelledError):
                raise
            except httpx.HTTPError as exc:
                self.last_error = exc
                kind = classify_exception(exc)
                if not kind.is_retryable or attempt >= max_attempts:
                    raise NetworkError(
                        f"Request failed after {attempt} attempt(s): {exc}",
                        attempts=attempt,
                        retryable=kind.is_retryable,
                    ) from exc
                delay = calculate_delay(self.policy, attempt - 1, rng=self._rng)
                self.history.append(RetryAttempt(attempt, kind, delay, error=str(exc)))
                output.debug(
                    f"Connection error: {exc}, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{max_attempts})"
                )
                await self._wait(delay)
                continue

            self.last_status = response.status_code
            if response.status_code < 400:
                return response
            kind = classify_status(response.status_code)
            if not kind.is_retryable or attempt >= max_attempts:
                return response

            retry_after = parse_retry_after(response.headers.get("retry-after"))
            delay = calculate_delay(self.policy, attempt - 1, retry_after, rng=self._rng)
            self.history.append(RetryAttempt(attempt, kind, delay, status=response.status_code))
            label = "Rate limited" if kind is FailureKind.RATE_LIMITED else "Server error"
            output.debug(
                f"{label} {response.status_code}, retrying in {delay:.2f}s "
                f"(attempt {attempt}/{max_attempts})"
            )
            await self._wait(delay)

        raise AssertionError("unreachable: the last attempt always returns or raises")  # pragma: no cover

    # ------------------------------------------------------------------ #
    # Deadline handling
    # ------------------------------------------------------------------ #

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or ``None`` without one."""
        if self.deadline is None:
            return None
        return self.deadline - self._clock()

    def _timeout_error(self) -> ExecutionTimeoutError:
        return ExecutionTimeoutError(
            f"Deadline expired after {self.attempts} attempt(s)",
            attempts=self.attempts,
        )

    async def _dispatch(
        self, send: Callable[[int], Awaitable[httpx.Response]], attempt: int
    ) -> httpx.Response:
        remaining = self.remaining()
        if remaining is None:
            return await send(attempt)
        if remaining <= 0:
            raise self._timeout_error()
        try:
            return await asyncio.wait_for(send(attempt), timeout=remaining)
        except asyncio.TimeoutError:
            raise self._timeout_error() from None

    async def _wait(self, delay: float) -> None:
        remaining = self.remaining()
        if remaining is not None and delay >= remaining:
            logger.debug("Retry delay %.2fs exceeds the remaining %.2fs", delay, remaining)
            raise self._timeout_error()
        await self._sleep(delay)
