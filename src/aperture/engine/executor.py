"""Asynchronous execution of translated operation calls.

:class:`Executor` drives one invocation through a fixed sequence of states::

    IDLE -> REQUEST_BUILT -> AUTH_RESOLVED -> DRY_RUN_PREVIEW -> RENDERED
                                           -> DISPATCHED -> SUCCEEDED -> [CACHE_WRITTEN] -> RENDERED
                                                         -> RETRYING -> DISPATCHED ...
                                                         -> FAILED

1. **Build** -- method, URL with percent-encoded path parameters, query
   string, headers (custom headers included), JSON body, ``Accept`` and,
   when given, ``Idempotency-Key``.
2. **Authenticate** -- :class:`~aperture.auth.SecurityResolver` picks the
   first satisfiable security requirement. Failure is terminal and happens
   before any network activity.
3. **Dry run** -- returns a :attr:`~aperture.invocation.ResultKind.DRY_RUN`
   preview with credentials redacted. No network, no cache.
4. **Cache lookup** -- eligible requests are served from the
   :class:`~aperture.cache.response_cache.ResponseCache` without dispatch.
5. **Dispatch** -- through a :class:`~aperture.engine.retry.RetryController`
   over :class:`httpx.AsyncClient`. A 2xx response becomes ``SUCCESS`` (or
   ``EMPTY`` without a body) and is written to the cache when eligible.
   Other statuses raise :class:`~aperture.exceptions.HttpStatusError`.

Transport, sleep, clock and credentials are injectable so that tests run
without network access or real delays.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from aperture.auth.base import AuthResult
from aperture.auth.credentials import CredentialLookup
from aperture.auth.resolver import SecurityResolver
from aperture.cache.response_cache import ResponseCache, apply_env_overrides, make_cache_key
from aperture.engine.request import PreparedRequest, build_request
from aperture.engine.retry import RetryController, classify_status
from aperture.exceptions import ApertureError, HttpStatusError, TranslationError
from aperture.invocation import (
    ExecutionContext,
    ExecutionResult,
    OperationCall,
    RequestInfo,
    ResultKind,
)
from aperture.models import CachedCommand, CachedSpec, GlobalConfig
from aperture.output import (
    REDACTED,
    SecretContext,
    get_output,
    log_request,
    log_response,
    redact_headers,
    redact_url_query_params,
)
from aperture.translate import BaseUrlResolver

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class ExecutorState(str, enum.Enum):
    """States of one invocation, recorded in :attr:`Executor.state_history`."""

    IDLE = "idle"
    REQUEST_BUILT = "request_built"
    AUTH_RESOLVED = "auth_resolved"
    DRY_RUN_PREVIEW = "dry_run_preview"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHE_WRITTEN = "cache_written"
    RENDERED = "rendered"


class Executor:
    """Executes operation calls of one compiled spec.

    Args:
        spec: The compiled spec.
        context: Invocation settings; defaults to a single live, uncached,
            non-idempotent request.
        credentials: Secret lookup; defaults to the process environment.
        transport: Optional :mod:`httpx` transport (e.g.
            :class:`httpx.MockTransport` in tests).
        sleep: Awaitable sleep used between retries.
        clock: Monotonic clock used for the overall deadline.
        response_cache: Cache to use instead of one built from
            ``context.cache_config``.

    Example::

        executor = Executor(spec, ExecutionContext(retry_policy=RetryPolicy()))
        result = await executor.execute(translate(spec, "getUser", {"id": "42"}))
    """

    def __init__(
        self,
        spec: CachedSpec,
        context: Optional[ExecutionContext] = None,
        *,
        credentials: Optional[CredentialLookup] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Callable[[], float]] = None,
        response_cache: Optional[ResponseCache] = None,
    ) -> None:
        self.spec = spec
        self.context = context or ExecutionContext()
        self._credentials = credentials
        self._transport = transport
        self._sleep = sleep
        self._clock = clock or time.monotonic
        self._response_cache = response_cache

        self.state = ExecutorState.IDLE
        self.state_history: list[ExecutorState] = [ExecutorState.IDLE]
        self.controller: Optional[RetryController] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def execute(self, call: OperationCall) -> ExecutionResult:
        """Run *call* and return its result.

        Raises:
            TranslationError: The operation is unknown or the request cannot
                be built.
            ServerVariableError: Server URL variables cannot be resolved.
            AuthResolutionError: No security requirement is satisfiable.
            HttpStatusError: A terminal non-2xx response, or a retryable one
                after the attempts ran out.
            NetworkError: Transport failure after the attempts ran out.
            ExecutionTimeoutError: The overall deadline expired.
        """
        self.state = ExecutorState.IDLE
        self.state_history = [ExecutorState.IDLE]
        self.controller = None
        try:
            return await self._execute(call)
        except ApertureError:
            self._transition(ExecutorState.FAILED)
            raise

    # ------------------------------------------------------------------ #
    # Pipeline
    # ------------------------------------------------------------------ #

    async def _execute(self, call: OperationCall) -> ExecutionResult:
        context = self.context
        command = self.spec.find_command(call.operation_id)
        if command is None:
            raise TranslationError(
                f"Unknown operation '{call.operation_id}' in API '{self.spec.name}'",
                operation_id=call.operation_id,
            )

        # 1. Build
        base_url = BaseUrlResolver(self.spec, self._global_config).resolve(
            context.base_url, context.server_var_args
        )
        prepared = build_request(command, call, base_url, context.idempotency_key)
        self._transition(ExecutorState.REQUEST_BUILT)

        # 2. Auth
        resolver = SecurityResolver(self.spec, self._credentials, self._global_config)
        auth = resolver.resolve(command)
        request = prepared.with_auth(auth)
        secrets = SecretContext([*auth.secret_values, *resolver.known_secret_values()])
        self._transition(ExecutorState.AUTH_RESOLVED)

        # 3. Dry run
        if context.dry_run:
            self._transition(ExecutorState.DRY_RUN_PREVIEW)
            info = self._print_dry_run(request, secrets)
            self._transition(ExecutorState.RENDERED)
            return ExecutionResult(kind=ResultKind.DRY_RUN, request_info=info)

        cache, owns_cache = await self._open_cache(command, auth)
        try:
            cache_key = make_cache_key(self.spec.name, call, context.idempotency_key, base_url)

            # 4. Cache lookup
            if cache is not None:
                entry = await cache.get(cache_key)
                if entry is not None:
                    get_output().debug(f"Response cache hit for {command.operation_id}")
                    self._transition(ExecutorState.RENDERED)
                    return ExecutionResult(
                        kind=ResultKind.CACHED,
                        status=entry["status"],
                        headers=entry["headers"],
                        body=entry["body"],
                        request_info=self._request_info(request, secrets),
                    )

            # 5. Dispatch
            response = await self._execute_with_retry(command, request, secrets)
            self._map_response_error(response, secrets)
            self._transition(ExecutorState.SUCCEEDED)

            body = response.text
            headers = dict(response.headers)
            if cache is not None:
                written = await cache.set(
                    cache_key,
                    response.status_code,
                    headers,
                    body,
                    api_name=self.spec.name,
                    operation_id=command.operation_id,
                )
                if written:
                    self._transition(ExecutorState.CACHE_WRITTEN)
        finally:
            if owns_cache and cache is not None:
                await asyncio.to_thread(cache.close)

        self._transition(ExecutorState.RENDERED)
        return ExecutionResult(
            kind=ResultKind.SUCCESS if body else ResultKind.EMPTY,
            status=response.status_code,
            headers=headers,
            body=body or None,
            request_info=self._request_info(request, secrets),
            attempts=self.controller.attempts if self.controller else 1,
        )

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    @property
    def _global_config(self) -> Optional[GlobalConfig]:
        return self.context.global_config

    def _transition(self, state: ExecutorState) -> None:
        self.state = state
        self.state_history.append(state)
        logger.debug("Executor state: %s", state.value)

    async def _open_cache(
        self, command: CachedCommand, auth: AuthResult
    ) -> tuple[Optional[ResponseCache], bool]:
        """Return the response cache to use for *command*, or ``None`` to bypass it.

        A cache built from ``context.cache_config`` is opened and closed in a
        worker thread.
        """
        cache = self._response_cache
        owns_cache = False
        if cache is None:
            config = self.context.cache_config
            if config is None or not config.enabled:
                return None, False
            cache = await asyncio.to_thread(ResponseCache, config=apply_env_overrides(config))
            owns_cache = True
        if not cache.is_eligible(command.method, self.context.idempotency_key, auth.is_authenticated):
            if owns_cache:
                await asyncio.to_thread(cache.close)
            return None, False
        return cache, owns_cache

    async def _execute_with_retry(
        self,
        command: CachedCommand,
        request: PreparedRequest,
        secrets: SecretContext,
    ) -> httpx.Response:
        """Send *request* through a :class:`RetryController` bound to the call's deadline."""
        timeout = self.context.timeout
        if timeout is None and self._global_config is not None:
            timeout = self._global_config.default_timeout_secs
        deadline = self._clock() + timeout if timeout else None

        controller_kwargs = {"clock": self._clock, "deadline": deadline}
        if self._sleep is not None:
            controller_kwargs["sleep"] = self._sleep
        self.controller = RetryController(
            self.context.retry_policy,
            self.context.idempotency_key,
            command.method,
            **controller_kwargs,
        )

        httpx_request = request.to_httpx()
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=DEFAULT_REQUEST_TIMEOUT,
            follow_redirects=True,
        ) as client:

            async def send(attempt: int) -> httpx.Response:
                if attempt > 1:
                    self._transition(ExecutorState.RETRYING)
                self._transition(ExecutorState.DISPATCHED)
                log_request(request.method, str(httpx_request.url), request.headers, request.body, secrets)
                started = time.perf_counter()
                response = await client.send(httpx_request)
                duration_ms = (time.perf_counter() - started) * 1000
                log_response(response.status_code, duration_ms, response.headers, response.text, secrets)
                return response

            return await self.controller.run(send)

    def _map_response_error(self, response: httpx.Response, secrets: SecretContext) -> None:
        """Raise :class:`HttpStatusError` unless *response* is 2xx."""
        status = response.status_code
        if 200 <= status < 300:
            return
        attempts = self.controller.attempts if self.controller else 1
        raise HttpStatusError(
            status,
            body=secrets.redact_text(response.text),
            attempts=attempts,
            retryable=classify_status(status).is_retryable,
            headers=redact_headers(response.headers, secrets),
        )

    def _request_info(self, request: PreparedRequest, secrets: SecretContext) -> RequestInfo:
        params = {k: (REDACTED if secrets.is_secret(v) else v) for k, v in request.params.items()}
        url = PreparedRequest(method=request.method, url=request.url, params=params).full_url
        return RequestInfo(
            method=request.method,
            url=redact_url_query_params(url, secrets),
            headers=redact_headers(request.headers, secrets),
            body=secrets.redact_text(request.body) if request.body is not None else None,
            operation_id=request.operation_id,
        )

    def _print_dry_run(self, request: PreparedRequest, secrets: SecretContext) -> RequestInfo:
        """Print the redacted request to stderr and return its description."""
        info = self._request_info(request, secrets)
        output = get_output()
        output.info(f"[dry-run] {info.method} {info.url}")
        for key, value in info.headers.items():
            output.info(f"  Header: {key}: {value}")
        if info.body is not None:
            output.info(f"  Body: {info.body}")
        return info


async def execute(
    spec: CachedSpec,
    call: OperationCall,
    context: Optional[ExecutionContext] = None,
    *,
    credentials: Optional[CredentialLookup] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    clock: Optional[Callable[[], float]] = None,
    response_cache: Optional[ResponseCache] = None,
) -> ExecutionResult:
    """Execute *call* against *spec*. See :class:`Executor` for the arguments."""
    executor = Executor(
        spec,
        context,
        credentials=credentials,
        transport=transport,
        sleep=sleep,
        clock=clock,
        response_cache=response_cache,
    )
    return await executor.execute(call)
