"""Disk-based response caching for invocations.

Uses :mod:`diskcache` to persist successful (2xx) responses on the
filesystem with a configurable time-to-live (TTL). The cache directory is
``<config root>/.cache/responses`` unless another directory is given.

Cache keys are SHA-256 digests of a canonical JSON document holding the API
name, operation id, resolved base URL, every routed parameter, the request
body and the idempotency key, so that identical calls always resolve to the
same entry regardless of argument ordering. Credentials never enter the key:
authentication is injected after the key is computed and credential-bearing
custom headers are left out.

Which requests may use the cache is decided by
:meth:`ResponseCache.is_eligible` from the
:class:`~aperture.models.ResponseCacheConfig`:

* safe methods (GET, HEAD, OPTIONS) are eligible;
* mutating methods only with ``cache_mutating`` set, and a non-idempotent
  method (POST, PATCH) additionally needs an idempotency key;
* an explicit ``methods`` list replaces the two rules above, but a
  non-idempotent request without an idempotency key is never eligible;
* requests that carried credentials are excluded unless
  ``allow_authenticated`` is set.

Concurrent writers of one key store equivalent content, so last writer wins.
diskcache itself is safe across threads and processes.

See Also:
    :class:`~aperture.models.ResponseCacheConfig` -- the Pydantic model that
    controls the behaviour described above.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

import diskcache

from aperture.config import RESPONSES_DIRNAME, get_response_cache_dir
from aperture.exceptions import ConfigError
from aperture.invocation import OperationCall
from aperture.models import HTTPMethod, ResponseCacheConfig
from aperture.output import should_redact_header

logger = logging.getLogger(__name__)

ENV_CACHE_TTL = "APERTURE_CACHE_TTL"
ENV_CACHE_MAX_ENTRIES = "APERTURE_CACHE_MAX_ENTRIES"


def apply_env_overrides(config: ResponseCacheConfig) -> ResponseCacheConfig:
    """Return *config* with ``APERTURE_CACHE_TTL`` / ``APERTURE_CACHE_MAX_ENTRIES`` applied.

    Raises:
        ConfigError: If a variable is set to something other than a
            non-negative (TTL) or positive (max entries) integer.
    """
    updates: dict[str, int] = {}
    ttl = _int_from_env(ENV_CACHE_TTL, minimum=0)
    if ttl is not None:
        updates["ttl_seconds"] = ttl
    max_entries = _int_from_env(ENV_CACHE_MAX_ENTRIES, minimum=1)
    if max_entries is not None:
        updates["max_entries"] = max_entries
    return config.model_copy(update=updates) if updates else config


def _int_from_env(name: str, minimum: int) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from None
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


def make_cache_key(
    api_name: str,
    call: OperationCall,
    idempotency_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> str:
    """Deterministic digest identifying the response of *call*.

    Args:
        api_name: Name of the API the call belongs to.
        call: The translated call.
        idempotency_key: Included when present; two calls with different
            keys never share an entry.
        base_url: The resolved base URL, so that environments do not mix.

    Returns:
        A 64-character hex SHA-256 digest.
    """
    custom_headers = {
        name.lower(): value
        for name, value in call.custom_headers.items()
        if not should_redact_header(name)
    }
    document = {
        "api": api_name,
        "operation_id": call.operation_id,
        "base_url": base_url,
        "path": call.path_params,
        "query": call.query_params,
        "headers": {name.lower(): value for name, value in call.header_params.items()},
        "cookies": call.cookie_params,
        "custom_headers": custom_headers,
        "body": _canonical_body(call.body),
        "idempotency_key": idempotency_key,
    }
    raw = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _canonical_body(body: Optional[str]) -> Any:
    if body is None:
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return body


class ResponseCache:
    """Disk-backed cache of successful invocation responses.

    Entries are ``dict`` objects with ``status``, ``headers``, ``body``,
    ``api_name``, ``operation_id`` and ``cached_at`` keys. Expiry is enforced
    twice: diskcache drops entries after ``ttl_seconds``, and :meth:`get`
    compares ``cached_at`` against *clock* so that tests can move time
    forward without sleeping. When ``max_entries`` is exceeded the oldest
    entries are evicted.

    Blocking diskcache calls run in a worker thread via
    :func:`asyncio.to_thread` so the event loop is never blocked.

    Args:
        cache_dir: Directory containing the ``responses/`` cache directory;
            defaults to ``<config root>/.cache``.
        config: Cache configuration.
        clock: Wall-clock function returning seconds since the epoch.

    Example::

        cache = ResponseCache(config=ResponseCacheConfig(ttl_seconds=60))
        key = make_cache_key("petstore", call)
        if cache.is_eligible("get", None):
            hit = await cache.get(key)
    """

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        config: Optional[ResponseCacheConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ResponseCacheConfig()
        self._clock = clock
        if cache_dir is not None:
            self._directory = Path(cache_dir) / RESPONSES_DIRNAME
        else:
            self._directory = get_response_cache_dir()
        self._cache: Optional[diskcache.Cache] = None
        if self._config.enabled:
            self._cache = diskcache.Cache(str(self._directory), tag_index=True)

    @property
    def config(self) -> ResponseCacheConfig:
        return self._config

    @property
    def directory(self) -> Path:
        return self._directory

    # ------------------------------------------------------------------ #
    # Policy
    # ------------------------------------------------------------------ #

    def is_eligible(
        self,
        method: Union[HTTPMethod, str],
        idempotency_key: Optional[str] = None,
        authenticated: bool = False,
    ) -> bool:
        """Whether a request may be read from and written to the cache."""
        if self._cache is None or not self._config.enabled:
            return False
        method = HTTPMethod(method.lower()) if isinstance(method, str) else method
        if authenticated and not self._config.allow_authenticated:
            return False
        if not method.is_idempotent and idempotency_key is None:
            return False
        if self._config.methods is not None:
            return method in self._config.methods
        if method.is_safe:
            return True
        return self._config.cache_mutating

    # ------------------------------------------------------------------ #
    # Access
    # ------------------------------------------------------------------ #

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Look up *key*.

        Returns:
            The stored entry, or ``None`` on a miss, on expiry, or when the
            cache is disabled.
        """
        if self._cache is None:
            return None
        return await asyncio.to_thread(self._get_sync, key)

    async def set(
        self,
        key: str,
        status: int,
        headers: dict[str, str],
        body: Optional[str],
        api_name: str = "",
        operation_id: str = "",
    ) -> bool:
        """Store a response under *key*.

        Only 2xx responses are stored, and nothing is stored when the TTL
        is zero.

        Returns:
            ``True`` if the entry was written.
        """
        if self._cache is None or self._config.ttl_seconds == 0:
            return False
        if not (200 <= status < 300):
            return False
        entry = {
            "status": status,
            "headers": dict(headers),
            "body": body,
            "api_name": api_name,
            "operation_id": operation_id,
            "cached_at": self._clock(),
        }
        await asyncio.to_thread(self._set_sync, key, entry, api_name)
        return True

    def invalidate(self, key: str) -> None:
        """Remove a single entry."""
        if self._cache is not None:
            self._cache.delete(key)

    def clear(self) -> int:
        """Remove all entries; returns the number removed."""
        if self._cache is None:
            return 0
        return self._cache.clear()

    def clear_api(self, api_name: str) -> int:
        """Remove the entries of one API; returns the number removed."""
        if self._cache is None:
            return 0
        return self._cache.evict(api_name)

    def stats(self) -> dict[str, Any]:
        """Return cache statistics.

        Returns:
            A ``dict`` with ``enabled`` (bool), and when enabled: ``size``
            (number of entries), ``directory`` (str path), ``ttl_seconds``
            and ``max_entries``.
        """
        if self._cache is None:
            return {"enabled": False}
        return {
            "enabled": True,
            "size": len(self._cache),
            "directory": str(self._directory),
            "ttl_seconds": self._config.ttl_seconds,
            "max_entries": self._config.max_entries,
        }

    def close(self) -> None:
        """Close the underlying :class:`diskcache.Cache` and release resources."""
        if self._cache is not None:
            self._cache.close()

    # ------------------------------------------------------------------ #
    # Blocking internals (run in a worker thread)
    # ------------------------------------------------------------------ #

    def _get_sync(self, key: str) -> Optional[dict[str, Any]]:
        assert self._cache is not None
        entry = self._cache.get(key)
        if not isinstance(entry, dict):
            return None
        age = self._clock() - float(entry.get("cached_at", 0))
        if age >= self._config.ttl_seconds:
            self._cache.delete(key)
            logger.debug("Response cache entry %s expired %.0fs ago", key[:12], age - self._config.ttl_seconds)
            return None
        return entry

    def _set_sync(self, key: str, entry: dict[str, Any], api_name: str) -> None:
        assert self._cache is not None
        self._cache.set(key, entry, expire=self._config.ttl_seconds, tag=api_name or None)
        overflow = len(self._cache) - self._config.max_entries
        while overflow > 0:
            try:
                oldest, _ = self._cache.peekitem(last=False)
            except KeyError:
                break
            self._cache.delete(oldest)
            overflow -= 1
