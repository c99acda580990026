"""Security-scheme resolution for compiled commands.

- :class:`SecurityResolver` -- chooses the first satisfiable security
  requirement of a command and produces its :class:`AuthResult`.
- :class:`SchemeHandler` / :class:`SchemeRegistry` -- per-type credential
  placement (``apiKey`` and ``http``).
- :class:`CredentialLookup` -- where secret values come from
  (:class:`EnvironmentCredentials` by default).

Typical usage::

    from aperture.auth import SecurityResolver

    auth = SecurityResolver(spec).resolve(command)
"""

from aperture.auth.base import AuthResult, SchemeHandler
from aperture.auth.credentials import CredentialLookup, EnvironmentCredentials, MappingCredentials
from aperture.auth.resolver import SecurityResolver
from aperture.auth.schemes import ApiKeyHandler, HttpHandler, SchemeRegistry, create_default_registry

__all__ = [
    "ApiKeyHandler",
    "AuthResult",
    "CredentialLookup",
    "EnvironmentCredentials",
    "HttpHandler",
    "MappingCredentials",
    "SchemeHandler",
    "SchemeRegistry",
    "SecurityResolver",
    "create_default_registry",
]
