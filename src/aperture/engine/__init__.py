"""Execution engine for aperture.

Turns translated :class:`~aperture.invocation.OperationCall` objects into
HTTP requests and runs them over :mod:`httpx` with auth injection, dry-run
previews, response caching, and retry with exponential backoff.

Classes:
    :class:`Executor` -- runs one invocation through its state machine.
    :class:`RetryController` -- the attempt loop of one logical call.

Functions:
    :func:`execute` -- execute a single call.
    :func:`execute_batch` -- execute independent calls concurrently.

Example::

    from aperture.engine import execute

    result = await execute(spec, call, ExecutionContext(dry_run=True))
"""

from aperture.engine.batch import execute_batch
from aperture.engine.executor import Executor, ExecutorState, execute
from aperture.engine.request import PreparedRequest, build_request
from aperture.engine.retry import (
    FailureKind,
    RetryAttempt,
    RetryController,
    calculate_delay,
    classify_exception,
    classify_status,
    parse_retry_after,
)

__all__ = [
    "Executor",
    "ExecutorState",
    "FailureKind",
    "PreparedRequest",
    "RetryAttempt",
    "RetryController",
    "build_request",
    "calculate_delay",
    "classify_exception",
    "classify_status",
    "execute",
    "execute_batch",
    "parse_retry_after",
]
