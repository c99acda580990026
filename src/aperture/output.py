"""Diagnostic output with stderr discipline and secret redaction.

aperture is a library: primary data (response bodies) is handed back to the
caller inside an :class:`~aperture.invocation.ExecutionResult` and never
printed. Everything this module emits is *diagnostics* and goes to stderr:

* :class:`OutputManager` -- quiet/verbose aware wrapper around a Rich
  stderr :class:`~rich.console.Console`. Respects ``NO_COLOR`` and
  ``TERM=dumb``. Installed globally via :func:`set_output`; library code
  reaches it through :func:`get_output`.
* Redaction helpers -- :func:`should_redact_header`,
  :func:`redact_url_query_params`, :func:`redact_headers` and
  :class:`SecretContext` make sure credentials never reach a log line.
* :func:`log_request` / :func:`log_response` -- the request/response trace
  used by the executor. Bodies are truncated to :func:`max_log_body`
  characters (``APERTURE_LOG_MAX_BODY``, default 1000).

Configuring log handlers and levels is left to the embedding application.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterable, Mapping
from typing import Optional
from urllib.parse import unquote_plus

from rich.console import Console

logger = logging.getLogger("aperture.executor")

REDACTED = "[REDACTED]"
DEFAULT_LOG_MAX_BODY = 1000

# Shorter secrets would redact legitimate body content.
_MIN_SECRET_LENGTH_FOR_BODY_REDACTION = 8

_SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "x-api-token",
        "api-key",
        "api_key",
        "x-access-token",
        "x-auth-token",
        "x-secret-token",
        "token",
        "secret",
        "password",
        "x-webhook-secret",
        "cookie",
        "set-cookie",
        "x-csrf-token",
        "x-xsrf-token",
        "x-amz-security-token",
        "private-token",
    }
)

_SENSITIVE_QUERY_PARAMS = frozenset(
    {
        "api_key",
        "apikey",
        "api-key",
        "key",
        "token",
        "access_token",
        "accesstoken",
        "auth_token",
        "authtoken",
        "bearer_token",
        "refresh_token",
        "secret",
        "api_secret",
        "client_secret",
        "password",
        "passwd",
        "pwd",
        "signature",
        "sig",
        "session_id",
        "sessionid",
        "auth",
        "authorization",
        "credentials",
    }
)


class OutputManager:
    """Routes diagnostic messages to stderr.

    Args:
        no_color: Disable all colour and Rich markup.
        quiet: Suppress informational messages. Warnings and errors still show.
        verbose: Enable debug-level messages.
    """

    def __init__(self, no_color: bool = False, quiet: bool = False, verbose: bool = False) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def is_quiet(self) -> bool:
        """Whether quiet mode is enabled."""
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        """Whether verbose mode is enabled."""
        return self._verbose

    def info(self, message: str) -> None:
        """Print an informational message. Suppressed in quiet mode."""
        if not self._quiet:
            if self._no_color:
                print(message, file=sys.stderr, flush=True)
            else:
                self._stderr.print(message, markup=False)

    def warning(self, message: str) -> None:
        """Print a warning. Never suppressed by quiet mode."""
        if self._no_color:
            print(f"Warning: {message}", file=sys.stderr, flush=True)
        else:
            self._stderr.print("[yellow]Warning:[/yellow] ", end="")
            self._stderr.print(message, markup=False)

    def error(self, message: str) -> None:
        """Print an error. Never suppressed."""
        if self._no_color:
            print(f"Error: {message}", file=sys.stderr, flush=True)
        else:
            self._stderr.print("[bold red]Error:[/bold red] ", end="")
            self._stderr.print(message, markup=False)

    def debug(self, message: str) -> None:
        """Print a debug message. Only shown in verbose mode."""
        if self._verbose:
            if self._no_color:
                print(f"[debug] {message}", file=sys.stderr, flush=True)
            else:
                self._stderr.print(f"[debug] {message}", style="dim", markup=False)


def _should_disable_color() -> bool:
    """Return True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    if os.environ.get("TERM") == "dumb":
        return True
    return False


# ------------------------------------------------------------------ #
# Global output instance
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the global :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    """Install *output* as the global :class:`OutputManager` instance."""
    global _output
    _output = output


def reset_output() -> None:
    """Reset the global :class:`OutputManager` to ``None``.

    Primarily useful in test suites to ensure a clean state between tests.
    """
    global _output
    _output = None


# ------------------------------------------------------------------ #
# Redaction
# ------------------------------------------------------------------ #


class SecretContext:
    """Resolved secret values that must never appear in diagnostics.

    Built by the executor from :attr:`~aperture.auth.AuthResult.secret_values`.
    Values are matched exactly in header values and as substrings in bodies
    (substring matching only for values of 8 characters or more).
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self._secrets = sorted({s for s in secrets if s})

    @property
    def has_secrets(self) -> bool:
        return bool(self._secrets)

    def is_secret(self, value: str) -> bool:
        return value in self._secrets

    def redact_text(self, text: str) -> str:
        for secret in self._secrets:
            if len(secret) >= _MIN_SECRET_LENGTH_FOR_BODY_REDACTION:
                text = text.replace(secret, REDACTED)
        return text


def should_redact_header(name: str) -> bool:
    """Whether the header *name* is known to carry credentials."""
    return name.lower() in _SENSITIVE_HEADERS


def redact_headers(
    headers: Mapping[str, str], secrets: Optional[SecretContext] = None
) -> dict[str, str]:
    """Return a copy of *headers* with sensitive values replaced by ``[REDACTED]``."""
    redacted = {}
    for name, value in headers.items():
        if should_redact_header(name) or (secrets is not None and secrets.is_secret(value)):
            redacted[name] = REDACTED
        else:
            redacted[name] = value
    return redacted


def redact_url_query_params(url: str, secrets: Optional[SecretContext] = None) -> str:
    """Replace the values of credential-like query parameters in *url*.

    A parameter is redacted when its name is known to carry credentials or,
    given *secrets*, when its decoded value is a resolved secret.
    """
    base, sep, query = url.partition("?")
    if not sep:
        return url
    query, hash_sep, fragment = query.partition("#")
    parts = []
    for param in query.split("&"):
        name, eq, value = param.partition("=")
        is_secret = secrets is not None and secrets.is_secret(unquote_plus(value))
        if eq and (name.lower() in _SENSITIVE_QUERY_PARAMS or is_secret):
            parts.append(f"{name}={REDACTED}")
        else:
            parts.append(param)
    return f"{base}?{'&'.join(parts)}{hash_sep}{fragment}"


def max_log_body() -> int:
    """Maximum number of body characters written to diagnostics."""
    raw = os.environ.get("APERTURE_LOG_MAX_BODY", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_LOG_MAX_BODY
    return value if value >= 0 else DEFAULT_LOG_MAX_BODY


def truncate_body(text: str, limit: Optional[int] = None) -> str:
    """Shorten *text* to *limit* characters, noting how much was dropped."""
    if limit is None:
        limit = max_log_body()
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text) - limit} more characters)"


def log_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Optional[str] = None,
    secrets: Optional[SecretContext] = None,
) -> None:
    """Trace an outgoing request with credentials redacted."""
    safe_url = redact_url_query_params(url, secrets)
    logger.info("-> %s %s", method.upper(), safe_url)
    output = get_output()
    output.debug(f"-> {method.upper()} {safe_url}")
    for name, value in redact_headers(headers, secrets).items():
        logger.debug("  %s: %s", name, value)
    if body:
        shown = secrets.redact_text(body) if secrets else body
        logger.debug("Request body: %s", truncate_body(shown))


def log_response(
    status: int,
    duration_ms: float,
    headers: Mapping[str, str],
    body: Optional[str] = None,
    secrets: Optional[SecretContext] = None,
) -> None:
    """Trace a received response with credentials redacted."""
    logger.info("<- %d (%.0fms)", status, duration_ms)
    get_output().debug(f"<- {status} ({duration_ms:.0f}ms)")
    for name, value in redact_headers(headers, secrets).items():
        logger.debug("  %s: %s", name, value)
    if body:
        shown = secrets.redact_text(body) if secrets else body
        logger.debug("Response body: %s", truncate_body(shown))
