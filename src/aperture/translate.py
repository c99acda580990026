"""Invocation translation: raw arguments -> :class:`~aperture.invocation.OperationCall`.

This module turns what a caller typed into the structured call the executor
understands, and works out where that call should be sent:

* :func:`translate` -- validates raw argument values against the command's
  declared parameters and routes them into path, query, header and cookie
  buckets.
* :class:`ServerVariableResolver` -- parses ``name=value`` server variable
  assignments, applies defaults and enum constraints, and substitutes them
  into server URL templates such as ``https://{region}.api.example.com``.
* :class:`BaseUrlResolver` -- picks the base URL of an invocation.

Everything here is a pure function of its inputs (plus, for
:class:`BaseUrlResolver`, two environment variables read at construction)
and is safe to call concurrently.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional
from urllib.parse import quote

from aperture.config import env_base_url, env_environment
from aperture.exceptions import ServerVariableError, TranslationError
from aperture.invocation import OperationCall
from aperture.models import ApiConfig, CachedParameter, CachedSpec, GlobalConfig, ParameterLocation

DEFAULT_BASE_URL = "https://api.example.com"

_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_TEMPLATE_VARIABLE = re.compile(r"\{([^{}]*)\}")
_TEMPLATE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_MAX_TEMPLATE_NAME_LENGTH = 64


# ------------------------------------------------------------------ #
# Argument translation
# ------------------------------------------------------------------ #


def translate(
    spec: CachedSpec,
    operation_id: str,
    raw_args: Optional[Mapping[str, Any]] = None,
    body: Optional[Any] = None,
    custom_headers: Iterable[str] = (),
) -> OperationCall:
    """Map raw argument values onto the parameters of *operation_id*.

    Values may be strings, numbers, booleans or lists. Booleans are rendered
    as ``true``/``false`` and lists as comma-separated values (the OpenAPI
    ``form``/``simple`` styles without explode). ``None`` counts as absent.

    Args:
        spec: The compiled spec.
        operation_id: The operation to call.
        raw_args: Parameter values keyed by parameter name.
        body: Request body as JSON text, or any JSON-serialisable value.
        custom_headers: Extra headers as ``"Name: Value"`` strings.

    Returns:
        The routed :class:`~aperture.invocation.OperationCall`.

    Raises:
        TranslationError: If the operation is unknown, a required parameter
            is missing, an argument matches no declared parameter, a value is
            outside the declared enum, the body is not valid JSON, or a
            custom header is malformed.
    """
    command = spec.find_command(operation_id)
    if command is None:
        raise TranslationError(
            f"Unknown operation '{operation_id}' in API '{spec.name}'",
            operation_id=operation_id,
        )

    args = {name: value for name, value in (raw_args or {}).items() if value is not None}
    declared = {param.name: param for param in command.parameters}

    unknown = sorted(set(args) - set(declared))
    if unknown:
        raise TranslationError(
            f"Unknown parameter(s) for '{operation_id}': {', '.join(unknown)}",
            operation_id=operation_id,
            field=unknown[0],
        )

    buckets: dict[ParameterLocation, dict[str, str]] = {location: {} for location in ParameterLocation}
    for param in command.parameters:
        if param.name not in args:
            if param.required:
                raise TranslationError(
                    f"Missing required {param.location.value} parameter '{param.name}' "
                    f"for '{operation_id}'",
                    operation_id=operation_id,
                    field=param.name,
                )
            continue
        value = _render_value(args[param.name])
        _check_enum(param, value, operation_id)
        buckets[param.location][param.name] = value

    if body is None and command.request_body is not None and command.request_body.required:
        raise TranslationError(
            f"'{operation_id}' requires a request body",
            operation_id=operation_id,
            field="body",
        )

    return OperationCall(
        operation_id=operation_id,
        path_params=buckets[ParameterLocation.PATH],
        query_params=buckets[ParameterLocation.QUERY],
        header_params=buckets[ParameterLocation.HEADER],
        cookie_params=buckets[ParameterLocation.COOKIE],
        body=_normalise_body(body, operation_id),
        custom_headers=parse_custom_headers(custom_headers, operation_id),
    )


def parse_custom_headers(headers: Iterable[str], operation_id: Optional[str] = None) -> dict[str, str]:
    """Parse ``"Name: Value"`` strings into a header mapping.

    Raises:
        TranslationError: If an entry has no colon, an empty or invalid name.
    """
    parsed: dict[str, str] = {}
    for raw in headers:
        name, sep, value = raw.partition(":")
        name = name.strip()
        if not sep or not name:
            raise TranslationError(
                f"Invalid header '{raw}': expected 'Name: Value'",
                operation_id=operation_id,
                field="header",
            )
        if not _HEADER_NAME.match(name):
            raise TranslationError(
                f"Invalid header name '{name}'",
                operation_id=operation_id,
                field="header",
            )
        value = value.strip()
        if "\r" in value or "\n" in value:
            raise TranslationError(
                f"Header '{name}' contains a line break",
                operation_id=operation_id,
                field="header",
            )
        parsed[name] = value
    return parsed


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_render_value(item) for item in value)
    return str(value)


def _check_enum(param: CachedParameter, value: str, operation_id: str) -> None:
    if not param.enum_values:
        return
    allowed = [_render_value(item) for item in param.enum_values]
    if value not in allowed:
        raise TranslationError(
            f"Invalid value '{value}' for parameter '{param.name}'. "
            f"Allowed values: {', '.join(allowed)}",
            operation_id=operation_id,
            field=param.name,
        )


def _normalise_body(body: Any, operation_id: str) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    if isinstance(body, str):
        try:
            json.loads(body)
        except json.JSONDecodeError as exc:
            raise TranslationError(
                f"Request body for '{operation_id}' is not valid JSON: {exc}",
                operation_id=operation_id,
                field="body",
            ) from exc
        return body
    try:
        return json.dumps(body)
    except (TypeError, ValueError) as exc:
        raise TranslationError(
            f"Request body for '{operation_id}' is not JSON-serialisable: {exc}",
            operation_id=operation_id,
            field="body",
        ) from exc


# ------------------------------------------------------------------ #
# Server variables
# ------------------------------------------------------------------ #


class ServerVariableResolver:
    """Resolves the template variables of a spec's first server URL.

    Args:
        spec: The compiled spec; :attr:`~aperture.models.CachedSpec.server_variables`
            declares the variables, their defaults and enum constraints.

    Example::

        resolver = ServerVariableResolver(spec)
        variables = resolver.resolve_variables(["region=eu"])
        url = resolver.substitute_url(spec.base_url, variables)
    """

    def __init__(self, spec: CachedSpec) -> None:
        self.spec = spec

    def resolve_variables(self, args: Iterable[str] = ()) -> dict[str, str]:
        """Combine ``name=value`` assignments with the declared defaults.

        Raises:
            ServerVariableError: If an assignment is malformed, names an
                undeclared variable, violates the variable's enum, or a
                variable without default is not assigned.
        """
        provided: dict[str, str] = {}
        for arg in args:
            name, value = _parse_assignment(arg)
            provided[name] = value

        declared = self.spec.server_variables
        unknown = sorted(set(provided) - set(declared))
        if unknown:
            available = ", ".join(sorted(declared)) or "none"
            raise ServerVariableError(
                f"Unknown server variable '{unknown[0]}'. Available variables: {available}",
                field=unknown[0],
            )

        resolved: dict[str, str] = {}
        for name, variable in declared.items():
            if name in provided:
                value = provided[name]
            elif variable.default is not None:
                value = variable.default
            else:
                raise ServerVariableError(
                    f"Server variable '{name}' has no default and must be provided as {name}=<value>",
                    field=name,
                )
            if variable.enum_values and value not in variable.enum_values:
                raise ServerVariableError(
                    f"Invalid value '{value}' for server variable '{name}'. "
                    f"Allowed values: {', '.join(variable.enum_values)}",
                    field=name,
                )
            resolved[name] = value
        return resolved

    def substitute_url(self, template: str, variables: Mapping[str, str]) -> str:
        """Replace every ``{name}`` in *template* with its percent-encoded value.

        Raises:
            ServerVariableError: If a template variable name is invalid or has
                no value in *variables*.
        """

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            _validate_template_name(name)
            if name not in variables:
                raise ServerVariableError(
                    f"Unresolved variable '{name}' in server URL '{template}'",
                    field=name,
                )
            return encode_server_variable(variables[name])

        return _TEMPLATE_VARIABLE.sub(replace, template)


def encode_server_variable(value: str) -> str:
    """Percent-encode *value* for a server URL, keeping ``/`` and unreserved characters."""
    return quote(value, safe="/-_.~")


def _parse_assignment(arg: str) -> tuple[str, str]:
    name, sep, value = arg.partition("=")
    if not sep:
        raise ServerVariableError(f"Invalid server variable '{arg}': expected format key=value")
    name, value = name.strip(), value.strip()
    if not name:
        raise ServerVariableError(f"Invalid server variable '{arg}': empty variable name")
    if not value:
        raise ServerVariableError(f"Invalid server variable '{arg}': empty variable value", field=name)
    return name, value


def _validate_template_name(name: str) -> None:
    if not name:
        raise ServerVariableError("Invalid server URL template: empty variable name '{}'")
    if len(name) > _MAX_TEMPLATE_NAME_LENGTH:
        raise ServerVariableError(
            f"Template variable name '{{{name}}}' is longer than {_MAX_TEMPLATE_NAME_LENGTH} characters"
        )
    if not _TEMPLATE_NAME.match(name):
        raise ServerVariableError(
            f"Template variable name '{{{name}}}' must start with a letter or underscore "
            "and contain only letters, digits or underscores"
        )


# ------------------------------------------------------------------ #
# Base URL
# ------------------------------------------------------------------ #


class BaseUrlResolver:
    """Chooses the base URL of an invocation.

    Sources, highest priority first:

    1. the explicit URL passed to :meth:`resolve`;
    2. ``APERTURE_BASE_URL``;
    3. the API's config entry: the URL for the environment selected by
       ``APERTURE_ENV``, then ``base_url_override``;
    4. the spec's first server, with server variables substituted;
    5. :data:`DEFAULT_BASE_URL`.

    Args:
        spec: The compiled spec.
        global_config: Optional config holding per-API overrides.
        environment: Environment name; defaults to ``APERTURE_ENV``.
    """

    def __init__(
        self,
        spec: CachedSpec,
        global_config: Optional[GlobalConfig] = None,
        environment: Optional[str] = None,
    ) -> None:
        self.spec = spec
        self.global_config = global_config
        self.environment = environment if environment is not None else env_environment()

    @property
    def api_config(self) -> Optional[ApiConfig]:
        if self.global_config is None:
            return None
        return self.global_config.api_configs.get(self.spec.name)

    def resolve(self, explicit: Optional[str] = None, server_var_args: Iterable[str] = ()) -> str:
        """Return the base URL, without a trailing slash.

        Raises:
            ServerVariableError: If the spec's server URL is a template and
                its variables cannot be resolved from *server_var_args*.
        """
        return self._resolve(explicit, tuple(server_var_args)).rstrip("/")

    def _resolve(self, explicit: Optional[str], server_var_args: tuple[str, ...]) -> str:
        if explicit:
            return explicit

        from_env = env_base_url()
        if from_env:
            return from_env

        api_config = self.api_config
        if api_config is not None:
            if self.environment and self.environment in api_config.environment_urls:
                return api_config.environment_urls[self.environment]
            if api_config.base_url_override:
                return api_config.base_url_override

        base_url = self.spec.base_url
        if base_url:
            if self.spec.server_variables or server_var_args or _TEMPLATE_VARIABLE.search(base_url):
                resolver = ServerVariableResolver(self.spec)
                return resolver.substitute_url(base_url, resolver.resolve_variables(server_var_args))
            return base_url

        return DEFAULT_BASE_URL
