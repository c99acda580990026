"""Concurrent execution of independent operation calls.

:func:`execute_batch` runs many invocations of one spec at once, bounded by
an :class:`asyncio.Semaphore`. Every call gets its own
:class:`~aperture.engine.executor.Executor`, so retries, deadlines and
idempotency keys never leak between calls. Results come back in input
order; aperture errors are returned in place of a result instead of
aborting the rest of the batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, Union

import httpx

from aperture.auth.credentials import CredentialLookup
from aperture.cache.response_cache import ResponseCache, apply_env_overrides
from aperture.engine.executor import Executor
from aperture.exceptions import ApertureError
from aperture.invocation import ExecutionContext, ExecutionResult, OperationCall
from aperture.models import CachedSpec

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5

BatchItem = Union[OperationCall, tuple[OperationCall, ExecutionContext]]
BatchOutcome = Union[ExecutionResult, ApertureError]


async def execute_batch(
    spec: CachedSpec,
    calls: Sequence[BatchItem],
    context: Optional[ExecutionContext] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    *,
    credentials: Optional[CredentialLookup] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    clock: Optional[Callable[[], float]] = None,
    response_cache: Optional[ResponseCache] = None,
) -> list[BatchOutcome]:
    """Execute *calls* concurrently.

    Args:
        spec: The compiled spec shared by all calls.
        calls: Operation calls, optionally paired with their own
            :class:`~aperture.invocation.ExecutionContext` (for example to
            give each call a distinct idempotency key).
        context: Context of calls without their own.
        concurrency: Maximum number of calls in flight.
        credentials: Secret lookup shared by all calls.
        transport: Optional :mod:`httpx` transport.
        sleep: Awaitable sleep used between retries.
        clock: Monotonic clock used for deadlines.
        response_cache: Cache shared by all calls; when omitted and
            *context* enables caching, one cache is opened for the batch.

    Returns:
        One :class:`~aperture.invocation.ExecutionResult` or
        :class:`~aperture.exceptions.ApertureError` per call, in input order.

    Raises:
        ValueError: If *concurrency* is less than 1.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    default_context = context or ExecutionContext()
    owns_cache = False
    if response_cache is None and default_context.cache_config is not None and default_context.cache_config.enabled:
        response_cache = ResponseCache(config=apply_env_overrides(default_context.cache_config))
        owns_cache = True

    semaphore = asyncio.Semaphore(concurrency)

    async def run_one(index: int, item: BatchItem) -> BatchOutcome:
        call, call_context = item if isinstance(item, tuple) else (item, default_context)
        executor = Executor(
            spec,
            call_context,
            credentials=credentials,
            transport=transport,
            sleep=sleep,
            clock=clock,
            response_cache=response_cache,
        )
        async with semaphore:
            try:
                return await executor.execute(call)
            except ApertureError as exc:
                logger.debug("Batch call %d (%s) failed: %s", index, call.operation_id, exc)
                return exc

    try:
        outcomes = await asyncio.gather(*(run_one(i, item) for i, item in enumerate(calls)))
    finally:
        if owns_cache and response_cache is not None:
            response_cache.close()

    failed = sum(1 for outcome in outcomes if isinstance(outcome, ApertureError))
    logger.info("Batch of %d call(s) finished, %d failed", len(outcomes), failed)
    return list(outcomes)
