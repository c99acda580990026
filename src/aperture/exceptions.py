"""Exception hierarchy for aperture.

All exceptions inherit from :class:`ApertureError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`aperture.exit_codes`
and a :meth:`~ApertureError.to_dict` method so front-ends can render either
human text (``str(exc)``) or a machine-readable payload.

Subclass hierarchy::

    ApertureError (exit 1)
    +-- ConfigError              (exit 1)
    +-- FileSystemError          (exit 1)
    +-- SpecParseError           (exit 7)
    |   +-- UnsupportedFeatureError
    +-- CacheError               (exit 8)
    |   +-- CacheMissError
    |   +-- CacheVersionMismatch
    |   +-- CacheStaleError
    |   +-- CacheCorruptedError
    +-- TranslationError         (exit 2)
    |   +-- ServerVariableError
    +-- AuthResolutionError      (exit 3)
    +-- NetworkError             (exit 6)
    +-- HttpStatusError          (exit 4, or 5 when retries were exhausted)
    +-- ExecutionTimeoutError    (exit 9)

Cache errors are recovered locally by
:meth:`~aperture.cache.store.CacheStore.load_or_compile`; callers normally
never see them.
"""

from __future__ import annotations

from typing import Any, Optional

from aperture.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CACHE_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_HTTP_ERROR,
    EXIT_INVALID_USAGE,
    EXIT_SERVER_ERROR,
    EXIT_SPEC_PARSE_ERROR,
    EXIT_TIMEOUT,
)


class ApertureError(Exception):
    """Base exception for all aperture errors.

    Every subclass sets a class-level ``exit_code`` and a short ``kind``
    identifier used in the machine-readable form.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
        **details: Structured context (offending field, scheme name,
            attempt count, ...) surfaced by :meth:`to_dict`.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    kind: str = "error"

    def __init__(self, message: str, exit_code: int | None = None, **details: Any):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details: dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable description of the error."""
        return {
            "kind": self.kind,
            "message": self.message,
            "exit_code": self.exit_code,
            "details": dict(self.details),
        }


class ConfigError(ApertureError):
    """Raised for configuration problems (invalid config JSON, duplicate API names)."""

    kind = "config"


class FileSystemError(ApertureError):
    """Raised when a filesystem operation behind :class:`~aperture.fs.FileSystem` fails."""

    kind = "io"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, path=path)
        self.path = path


# --- Compilation ---


class SpecParseError(ApertureError):
    """Raised when the OpenAPI document is malformed. Aborts compilation."""

    exit_code = EXIT_SPEC_PARSE_ERROR
    kind = "parse"


class UnsupportedFeatureError(SpecParseError):
    """An operation uses a construct outside the supported subset.

    Only raised in strict compilation; otherwise the operation is recorded
    in :attr:`~aperture.models.CachedSpec.skipped_endpoints`.
    """

    kind = "unsupported_feature"

    def __init__(self, message: str, method: str = "", path: str = "", reason: str = ""):
        super().__init__(message, method=method or None, path=path or None, reason=reason or None)
        self.method = method
        self.path = path
        self.reason = reason


# --- Cache store ---


class CacheError(ApertureError):
    """Base class for compiled-cache problems that trigger recompilation."""

    exit_code = EXIT_CACHE_ERROR
    kind = "cache"

    def __init__(self, message: str, api_name: str, **details: Any):
        super().__init__(message, api_name=api_name, **details)
        self.api_name = api_name


class CacheMissError(CacheError):
    """No compiled cache exists for the API."""

    kind = "cache_miss"


class CacheVersionMismatch(CacheError):
    """The stored blob was written by a different ``cache_format_version``."""

    kind = "cache_version_mismatch"

    def __init__(self, api_name: str, found: int, expected: int):
        super().__init__(
            f"Cache for '{api_name}' has format version {found}, expected {expected}",
            api_name,
            found=found,
            expected=expected,
        )
        self.found = found
        self.expected = expected


class CacheStaleError(CacheError):
    """The source document changed since the cache was compiled."""

    kind = "cache_stale"

    def __init__(self, api_name: str):
        super().__init__(
            f"Cache for '{api_name}' is stale: the source document was modified",
            api_name,
        )


class CacheCorruptedError(CacheError):
    """The stored blob could not be deserialised."""

    kind = "cache_corrupted"


# --- Invocation ---


class TranslationError(ApertureError):
    """Raised when raw arguments cannot be mapped onto a command.

    Args:
        message: Human-readable description.
        operation_id: The operation being translated.
        field: The offending parameter name, when there is one.
    """

    exit_code = EXIT_INVALID_USAGE
    kind = "translation"

    def __init__(self, message: str, operation_id: str | None = None, field: str | None = None):
        super().__init__(message, operation_id=operation_id, field=field)
        self.operation_id = operation_id
        self.field = field


class ServerVariableError(TranslationError):
    """Raised for invalid, unknown or missing server template variables."""

    kind = "server_variable"


class AuthResolutionError(ApertureError):
    """No security requirement of the command could be satisfied.

    Raised before any network attempt is made.

    Args:
        message: Human-readable description.
        schemes: The scheme names that were tried, in order.
        env_vars: Environment variables consulted while resolving.
    """

    exit_code = EXIT_AUTH_FAILURE
    kind = "auth_resolution"

    def __init__(
        self,
        message: str,
        schemes: Optional[list[str]] = None,
        env_vars: Optional[list[str]] = None,
    ):
        super().__init__(message, schemes=schemes or None, env_vars=env_vars or None)
        self.schemes = list(schemes or [])
        self.env_vars = list(env_vars or [])


class NetworkError(ApertureError):
    """Raised on network-level failures after retries are exhausted.

    Args:
        message: Human-readable description.
        attempts: Number of attempts made.
        retryable: Whether the last failure was classified retryable.
    """

    exit_code = EXIT_CONNECTION_ERROR
    kind = "network"

    def __init__(self, message: str, attempts: int = 1, retryable: bool = True):
        super().__init__(message, attempts=attempts, retryable=retryable)
        self.attempts = attempts
        self.retryable = retryable


class HttpStatusError(ApertureError):
    """Raised for a terminal non-2xx response.

    Args:
        status: The HTTP status code of the final response.
        body: The response body text (possibly truncated for display).
        attempts: Number of attempts made.
        retryable: ``True`` when the status was retryable and attempts ran out.
    """

    exit_code = EXIT_HTTP_ERROR
    kind = "http_status"

    def __init__(
        self,
        status: int,
        body: str = "",
        attempts: int = 1,
        retryable: bool = False,
        headers: Optional[dict[str, str]] = None,
    ):
        message = f"HTTP {status}"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(
            message,
            exit_code=EXIT_SERVER_ERROR if retryable else None,
            status=status,
            attempts=attempts,
            retryable=retryable,
        )
        self.status = status
        self.body = body
        self.attempts = attempts
        self.retryable = retryable
        self.headers = dict(headers or {})


class ExecutionTimeoutError(ApertureError):
    """The overall deadline of an invocation expired; no further attempts are made."""

    exit_code = EXIT_TIMEOUT
    kind = "timeout"

    def __init__(self, message: str, timeout: float | None = None, attempts: int = 0):
        super().__init__(message, timeout=timeout, attempts=attempts)
        self.timeout = timeout
        self.attempts = attempts
