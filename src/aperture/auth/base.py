"""Foundational types of the security subsystem.

- :class:`AuthResult` -- the headers, query parameters and cookies that
  satisfy one security scheme, plus the raw secret values so diagnostics
  can redact them.
- :class:`SchemeHandler` -- abstract base class for turning a credential
  into an :class:`AuthResult` for one :class:`~aperture.models.SecuritySchemeType`.

Concrete handlers live in :mod:`aperture.auth.schemes` and are looked up
through a :class:`~aperture.auth.schemes.SchemeRegistry`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from aperture.models import CachedSecurityScheme, SecuritySchemeType


class AuthResult:
    """Authentication artifacts to inject into one outgoing request.

    Args:
        headers: HTTP headers to add (e.g. ``{"Authorization": "Bearer ..."}``).
        params: Query-string parameters to add (e.g. ``{"api_key": "..."}``).
        cookies: Cookies to add (serialised into a ``Cookie`` header).
        scheme_name: The security scheme that produced the credentials.
        secret_values: Raw secrets used, for log redaction.

    Example::

        result = AuthResult(headers={"Authorization": "Bearer tok123"}, scheme_name="bearerAuth")
        assert result.is_authenticated
    """

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
        scheme_name: Optional[str] = None,
        secret_values: list[str] | None = None,
    ):
        self.headers = headers or {}
        self.params = params or {}
        self.cookies = cookies or {}
        self.scheme_name = scheme_name
        self.secret_values = secret_values or []

    @property
    def is_authenticated(self) -> bool:
        """Whether any credential is carried."""
        return bool(self.headers or self.params or self.cookies)

    def __repr__(self) -> str:
        # Never include credential values.
        return (
            f"AuthResult(scheme_name={self.scheme_name!r}, headers={sorted(self.headers)}, "
            f"params={sorted(self.params)}, cookies={sorted(self.cookies)})"
        )


class SchemeHandler(ABC):
    """Places a credential on the request according to a security scheme.

    Every satisfiable :class:`~aperture.models.SecuritySchemeType` has exactly
    one handler. Types without a handler can never be satisfied.
    """

    @property
    @abstractmethod
    def scheme_type(self) -> SecuritySchemeType:
        """The scheme type this handler serves."""
        ...

    @abstractmethod
    def apply(self, scheme: CachedSecurityScheme, credential: str) -> AuthResult:
        """Build the :class:`AuthResult` for *credential* under *scheme*.

        Args:
            scheme: The compiled security scheme.
            credential: The non-empty secret value.

        Raises:
            AuthResolutionError: If the scheme lacks the data needed to place
                the credential.
        """
        ...
