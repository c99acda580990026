"""Security resolution: pick the credential that satisfies a command.

:class:`SecurityResolver` walks a command's ``security_requirements`` in
order and returns the :class:`~aperture.auth.base.AuthResult` of the first
scheme that:

1. exists in the spec and can be satisfied by a static credential,
2. is bound to a secret, either by the per-API config
   (:attr:`~aperture.models.ApiConfig.secrets`, which wins) or by the
   scheme's ``x-aperture-secret`` extension,
3. has that secret set to a non-empty value.

If no requirement is satisfiable, :class:`~aperture.exceptions.AuthResolutionError`
is raised before any network activity. The resolver holds no state between
calls.
"""

from __future__ import annotations

import logging
from typing import Optional

from aperture.auth.base import AuthResult
from aperture.auth.credentials import CredentialLookup, EnvironmentCredentials
from aperture.auth.schemes import SchemeRegistry, create_default_registry
from aperture.exceptions import AuthResolutionError
from aperture.models import (
    CachedApertureSecret,
    CachedCommand,
    CachedSpec,
    GlobalConfig,
    SecretSource,
)

logger = logging.getLogger(__name__)


class SecurityResolver:
    """Resolves credentials for commands of one compiled spec.

    Args:
        spec: The compiled spec owning the commands.
        credentials: Secret lookup; defaults to the process environment.
        global_config: Optional config providing per-API secret bindings.
        registry: Scheme handlers; defaults to
            :func:`~aperture.auth.schemes.create_default_registry`.

    Example::

        resolver = SecurityResolver(spec)
        auth = resolver.resolve(spec.find_command("getUser"))
        # auth.headers / .params / .cookies are ready to inject.
    """

    def __init__(
        self,
        spec: CachedSpec,
        credentials: Optional[CredentialLookup] = None,
        global_config: Optional[GlobalConfig] = None,
        registry: Optional[SchemeRegistry] = None,
    ) -> None:
        self.spec = spec
        self.credentials = credentials or EnvironmentCredentials()
        self.global_config = global_config
        self.registry = registry or create_default_registry()

    def secret_for(self, scheme_name: str) -> Optional[CachedApertureSecret]:
        """The secret binding for *scheme_name*: config first, then the spec."""
        if self.global_config is not None:
            api_config = self.global_config.api_configs.get(self.spec.name)
            if api_config is not None and scheme_name in api_config.secrets:
                return api_config.secrets[scheme_name]
        scheme = self.spec.security_schemes.get(scheme_name)
        return scheme.aperture_secret if scheme is not None else None

    def resolve(self, command: CachedCommand) -> AuthResult:
        """Return the credentials of the first satisfiable requirement of *command*.

        An empty requirement list yields an empty :class:`AuthResult`.

        Raises:
            AuthResolutionError: If no requirement can be satisfied. The error
                lists the schemes tried and the variables consulted.
        """
        requirements = command.security_requirements
        if not requirements:
            return AuthResult()

        env_vars: list[str] = []
        for scheme_name in requirements:
            scheme = self.spec.security_schemes.get(scheme_name)
            if scheme is None or not self.registry.is_satisfiable(scheme):
                continue
            secret = self.secret_for(scheme_name)
            if secret is None or secret.source != SecretSource.ENV:
                continue
            env_vars.append(secret.name)
            value = self.credentials.get(secret.name)
            if not value:
                continue
            logger.debug("Using security scheme '%s' for %s", scheme_name, command.operation_id)
            return self.registry.get_handler(scheme.scheme_type).apply(scheme, value)

        if env_vars:
            hint = "Set one of: " + ", ".join(env_vars)
        else:
            hint = "No supported scheme is bound to a secret (x-aperture-secret or config)"
        raise AuthResolutionError(
            f"No security requirement of '{command.operation_id}' could be satisfied "
            f"(schemes: {', '.join(requirements)}). {hint}",
            schemes=list(requirements),
            env_vars=env_vars,
        )

    def known_secret_values(self) -> list[str]:
        """Every currently set secret bound to any scheme of the spec, for redaction."""
        values = []
        for scheme_name in self.spec.security_schemes:
            secret = self.secret_for(scheme_name)
            if secret is None:
                continue
            value = self.credentials.get(secret.name)
            if value:
                values.append(value)
        return values
