"""Per-invocation value types: what to call, how, and what came back.

* :class:`OperationCall` -- an operation id plus arguments already sorted
  into path, query, header and cookie buckets. Produced by
  :func:`~aperture.translate.translate`.
* :class:`ExecutionContext` -- immutable knobs of one invocation (dry run,
  idempotency key, caching, retries, base URL, deadline). The default is a
  single live, uncached, non-idempotent request.
* :class:`ExecutionResult` -- the outcome, one of the :class:`ResultKind`
  variants.

All three are owned by the call that created them and are never shared.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from aperture.models import GlobalConfig, ResponseCacheConfig, RetryPolicy


class OperationCall(BaseModel):
    """One operation with its arguments routed by parameter location."""

    operation_id: str
    path_params: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    header_params: dict[str, str] = Field(default_factory=dict)
    cookie_params: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = Field(default=None, description="JSON request body, already validated")
    custom_headers: dict[str, str] = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    """Immutable configuration of one invocation.

    Attributes:
        dry_run: Build and return the request without sending it.
        idempotency_key: Sent verbatim as ``Idempotency-Key`` on every attempt.
        cache_config: Response caching; ``None`` disables the cache.
        retry_policy: Retry/backoff; ``None`` means a single attempt.
        base_url: Explicit base URL, overriding every other source.
        global_config: Per-API overrides (base URLs, secret bindings).
        server_var_args: ``name=value`` assignments for server URL templates.
        timeout: Overall deadline in seconds across all attempts and delays.
    """

    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    idempotency_key: Optional[str] = None
    cache_config: Optional[ResponseCacheConfig] = None
    retry_policy: Optional[RetryPolicy] = None
    base_url: Optional[str] = None
    global_config: Optional[GlobalConfig] = None
    server_var_args: tuple[str, ...] = ()
    timeout: Optional[float] = Field(default=None, gt=0)


class ResultKind(str, enum.Enum):
    """Variants of :class:`ExecutionResult`."""

    SUCCESS = "success"
    DRY_RUN = "dry_run"
    CACHED = "cached"
    EMPTY = "empty"


class RequestInfo(BaseModel):
    """Preview of a request, with credentials redacted."""

    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    operation_id: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome of one invocation.

    ``SUCCESS`` and ``CACHED`` carry ``body``, ``status`` and ``headers``;
    ``EMPTY`` is a 2xx response without a body; ``DRY_RUN`` carries only
    ``request_info``.
    """

    kind: ResultKind
    status: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    request_info: Optional[RequestInfo] = None
    attempts: int = 0

    @property
    def is_success(self) -> bool:
        """Whether a 2xx response was obtained (live or from the cache)."""
        return self.kind in (ResultKind.SUCCESS, ResultKind.CACHED, ResultKind.EMPTY)

    @property
    def from_cache(self) -> bool:
        return self.kind == ResultKind.CACHED

    def json(self) -> Any:  # type: ignore[override]
        """Decode the body as JSON; ``None`` when there is no body.

        Raises:
            ValueError: If the body is not valid JSON.
        """
        if not self.body:
            return None
        return json.loads(self.body)
