"""Built-in scheme handlers and their registry.

* :class:`ApiKeyHandler` -- ``apiKey`` schemes: the credential goes into the
  header, query parameter or cookie named by the scheme.
* :class:`HttpHandler` -- ``http`` schemes: ``Authorization: Bearer <v>``,
  ``Authorization: Basic <base64(v)>`` (*v* already holds ``user:password``),
  or ``Authorization: <scheme> <v>`` for any other token-like scheme.

``oauth2``, ``openIdConnect`` and ``mutualTLS`` have no handler: they require
interactive flows or client certificates and are never satisfiable.
"""

from __future__ import annotations

import base64

from aperture.auth.base import AuthResult, SchemeHandler
from aperture.exceptions import AuthResolutionError
from aperture.models import CachedSecurityScheme, CredentialLocation, SecuritySchemeType

UNSATISFIABLE_TYPES = frozenset(
    {
        SecuritySchemeType.OAUTH2,
        SecuritySchemeType.OPEN_ID_CONNECT,
        SecuritySchemeType.MUTUAL_TLS,
    }
)

UNSATISFIABLE_HTTP_SCHEMES = frozenset({"negotiate", "oauth", "oauth2", "openidconnect"})


class ApiKeyHandler(SchemeHandler):
    """Credential placed verbatim at the scheme's ``in``/``name``."""

    @property
    def scheme_type(self) -> SecuritySchemeType:
        return SecuritySchemeType.API_KEY

    def apply(self, scheme: CachedSecurityScheme, credential: str) -> AuthResult:
        key_name = scheme.parameter_name
        if not key_name or scheme.location is None:
            raise AuthResolutionError(
                f"Security scheme '{scheme.name}' does not declare where the API key goes",
                schemes=[scheme.name],
            )
        common = {"scheme_name": scheme.name, "secret_values": [credential]}
        if scheme.location == CredentialLocation.HEADER:
            return AuthResult(headers={key_name: credential}, **common)
        if scheme.location == CredentialLocation.QUERY:
            return AuthResult(params={key_name: credential}, **common)
        if scheme.location == CredentialLocation.COOKIE:
            return AuthResult(cookies={key_name: credential}, **common)
        raise AuthResolutionError(
            f"Security scheme '{scheme.name}' has unsupported location '{scheme.location}'",
            schemes=[scheme.name],
        )


class HttpHandler(SchemeHandler):
    """``Authorization`` header for ``http`` schemes (RFC 7235)."""

    @property
    def scheme_type(self) -> SecuritySchemeType:
        return SecuritySchemeType.HTTP

    def apply(self, scheme: CachedSecurityScheme, credential: str) -> AuthResult:
        http_scheme = (scheme.scheme or "").strip()
        lowered = http_scheme.lower()
        if not http_scheme or lowered in UNSATISFIABLE_HTTP_SCHEMES:
            raise AuthResolutionError(
                f"Security scheme '{scheme.name}' uses unsupported HTTP scheme '{http_scheme}'",
                schemes=[scheme.name],
            )

        if lowered == "bearer":
            value = f"Bearer {credential}"
        elif lowered == "basic":
            encoded = base64.b64encode(credential.encode("utf-8")).decode("ascii")
            value = f"Basic {encoded}"
        else:
            value = f"{http_scheme} {credential}"

        header_name = scheme.parameter_name or "Authorization"
        return AuthResult(
            headers={header_name: value},
            scheme_name=scheme.name,
            secret_values=[credential],
        )


class SchemeRegistry:
    """Maps :class:`~aperture.models.SecuritySchemeType` to its handler.

    Example::

        registry = create_default_registry()
        result = registry.get_handler(scheme.scheme_type).apply(scheme, "abc")
    """

    def __init__(self) -> None:
        self._handlers: dict[SecuritySchemeType, SchemeHandler] = {}

    def register(self, handler: SchemeHandler) -> None:
        """Register *handler*, replacing any handler for the same type."""
        self._handlers[handler.scheme_type] = handler

    def get_handler(self, scheme_type: SecuritySchemeType) -> SchemeHandler:
        """Return the handler for *scheme_type*.

        Raises:
            AuthResolutionError: If no handler is registered for the type.
        """
        handler = self._handlers.get(scheme_type)
        if handler is None:
            available = ", ".join(sorted(t.value for t in self._handlers)) or "(none)"
            raise AuthResolutionError(
                f"No handler for security scheme type '{scheme_type.value}'. "
                f"Supported types: {available}"
            )
        return handler

    def is_satisfiable(self, scheme: CachedSecurityScheme) -> bool:
        """Whether *scheme* could ever be satisfied by a static credential."""
        if scheme.scheme_type in UNSATISFIABLE_TYPES or scheme.scheme_type not in self._handlers:
            return False
        if scheme.scheme_type == SecuritySchemeType.HTTP:
            return (scheme.scheme or "").lower() not in UNSATISFIABLE_HTTP_SCHEMES
        return True

    def list_types(self) -> list[SecuritySchemeType]:
        return sorted(self._handlers, key=lambda t: t.value)


def create_default_registry() -> SchemeRegistry:
    """A :class:`SchemeRegistry` with the ``apiKey`` and ``http`` handlers."""
    registry = SchemeRegistry()
    registry.register(ApiKeyHandler())
    registry.register(HttpHandler())
    return registry
