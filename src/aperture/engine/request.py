"""Building the HTTP request of an invocation.

:func:`build_request` combines a compiled :class:`~aperture.models.CachedCommand`,
a translated :class:`~aperture.invocation.OperationCall` and a base URL into a
:class:`PreparedRequest`: the method, the full URL with percent-encoded path
parameters, query parameters, headers and the JSON body. Authentication is
merged in afterwards with :meth:`PreparedRequest.with_auth`, so the
unauthenticated form can be used for cache keys and previews.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional
from urllib.parse import quote, urlencode

import httpx

from aperture.auth.base import AuthResult
from aperture.engine.retry import IDEMPOTENCY_HEADER
from aperture.exceptions import TranslationError
from aperture.invocation import OperationCall
from aperture.models import CachedCommand

JSON_CONTENT_TYPE = "application/json"


@dataclass
class PreparedRequest:
    """Everything needed to send one invocation.

    Attributes:
        method: Upper-case HTTP method.
        url: Base URL joined with the expanded path, without query string.
        params: Query parameters.
        headers: Request headers, including ``Cookie`` when cookies are set.
        body: Encoded request body.
        operation_id: The operation being invoked.
    """

    method: str
    url: str
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    operation_id: Optional[str] = None

    @property
    def full_url(self) -> str:
        """The URL including the encoded query string."""
        if not self.params:
            return self.url
        return f"{self.url}?{urlencode(self.params)}"

    def with_auth(self, auth: AuthResult) -> PreparedRequest:
        """Return a copy with the credentials of *auth* merged in.

        Credentials never replace a header or parameter set explicitly by the
        caller. Header names are compared case-insensitively. Auth cookies are
        appended to an existing ``Cookie`` header.
        """
        headers = dict(self.headers)
        for name, value in auth.headers.items():
            if _find_header(headers, name) is None:
                headers[name] = value
        params = {**auth.params, **self.params}
        if auth.cookies:
            cookie_str = "; ".join(f"{k}={v}" for k, v in auth.cookies.items())
            existing = _find_header(headers, "Cookie")
            if existing is not None and headers[existing]:
                cookie_str = f"{headers[existing]}; {cookie_str}"
            _set_header(headers, "Cookie", cookie_str)
        return replace(self, headers=headers, params=params)

    def to_httpx(self) -> httpx.Request:
        """Convert to an :class:`httpx.Request`."""
        content = self.body.encode("utf-8") if self.body is not None else None
        return httpx.Request(
            self.method,
            self.url,
            params=self.params or None,
            headers=self.headers,
            content=content,
        )


def build_request(
    command: CachedCommand,
    call: OperationCall,
    base_url: str,
    idempotency_key: Optional[str] = None,
) -> PreparedRequest:
    """Build the unauthenticated request of *call*.

    Custom headers replace generated headers of the same name, compared
    case-insensitively. The idempotency key is set last and always wins
    over a custom header of the same name.

    Raises:
        TranslationError: If a ``{name}`` placeholder of the path has no
            value in :attr:`~aperture.invocation.OperationCall.path_params`.
    """
    path = expand_path(command.path, call.path_params, command.operation_id)

    headers: dict[str, str] = {"Accept": JSON_CONTENT_TYPE}
    headers.update(call.header_params)
    if call.cookie_params:
        headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in call.cookie_params.items())
    if call.body is not None:
        content_type = command.request_body.content_type if command.request_body else JSON_CONTENT_TYPE
        headers["Content-Type"] = content_type
    for name, value in call.custom_headers.items():
        _set_header(headers, name, value)
    if idempotency_key is not None:
        _set_header(headers, IDEMPOTENCY_HEADER, idempotency_key)

    return PreparedRequest(
        method=command.method.value.upper(),
        url=f"{base_url.rstrip('/')}{path}",
        params=dict(call.query_params),
        headers=headers,
        body=call.body,
        operation_id=command.operation_id,
    )


def expand_path(template: str, path_params: dict[str, str], operation_id: Optional[str] = None) -> str:
    """Substitute ``{name}`` placeholders with percent-encoded values."""
    result = []
    rest = template
    while True:
        start = rest.find("{")
        if start < 0:
            result.append(rest)
            break
        end = rest.find("}", start)
        if end < 0:
            result.append(rest)
            break
        name = rest[start + 1 : end]
        if name not in path_params:
            raise TranslationError(
                f"Missing value for path parameter '{name}'",
                operation_id=operation_id,
                field=name,
            )
        result.append(rest[:start])
        result.append(quote(path_params[name], safe=""))
        rest = rest[end + 1 :]
    path = "".join(result)
    return path if path.startswith("/") else f"/{path}"


def _find_header(headers: dict[str, str], name: str) -> Optional[str]:
    """Return the key of *headers* matching *name* case-insensitively."""
    lowered = name.lower()
    for key in headers:
        if key.lower() == lowered:
            return key
    return None


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set *name* in *headers*, dropping any differently-cased duplicates."""
    for key in [k for k in headers if k.lower() == name.lower()]:
        del headers[key]
    headers[name] = value
