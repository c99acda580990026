"""Compile an OpenAPI 3.x document into a :class:`~aperture.models.CachedSpec`.

:func:`compile_spec` is the single public entry point. It walks the document
and delegates each section to a private helper:

* ``_compile_security_schemes`` -- ``components/securitySchemes``, including
  validation of the ``x-aperture-secret`` extension.
* ``_compile_operations`` -- every path + method combination, in document
  order and then in :class:`~aperture.models.HTTPMethod` order, so the
  output is identical for identical input.
* ``_compile_servers`` -- the ``servers`` array and the variables of the
  first server.

Malformed documents raise :class:`~aperture.exceptions.SpecParseError`.
Operations that use a construct outside the supported subset are *skipped*
and recorded in :attr:`~aperture.models.CachedSpec.skipped_endpoints`
instead, unless ``strict=True`` turns the first one into an
:class:`~aperture.exceptions.UnsupportedFeatureError`:

* a request body without any JSON content type (``application/json`` or
  ``*/*+json``);
* a parameter serialised with ``content`` rather than ``schema``;
* an operation whose security requirements reference only unsupported
  schemes (``oauth2``, ``openIdConnect``, ``mutualTLS``, and ``http``
  schemes ``negotiate``/``oauth``/``oauth2``/``openidconnect``);
* a second operation reusing an ``operationId``.

Schema references stay symbolic: ``schema_ref`` fields keep the ``$ref``
string, so the compiled model does not depend on the size of the schema graph.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Union

from aperture.exceptions import SpecParseError, UnsupportedFeatureError
from aperture.models import (
    CachedApertureSecret,
    CachedCommand,
    CachedParameter,
    CachedRequestBody,
    CachedResponse,
    CachedSecurityScheme,
    CachedSpec,
    CommandExample,
    CredentialLocation,
    HTTPMethod,
    ParameterLocation,
    SecuritySchemeType,
    ServerVariable,
    SkippedEndpoint,
)
from aperture.parser.loader import parse_document, validate_openapi_version
from aperture.parser.resolver import resolve_ref

logger = logging.getLogger(__name__)

APERTURE_SECRET_EXTENSION = "x-aperture-secret"
JSON_CONTENT_TYPE = "application/json"

_UNSUPPORTED_HTTP_SCHEMES = frozenset({"negotiate", "oauth", "oauth2", "openidconnect"})
_ENV_VAR_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_UNSUPPORTED_CONTENT_REASONS = {
    "multipart/form-data": "file uploads are not supported",
    "application/octet-stream": "binary data uploads are not supported",
    "application/pdf": "PDF uploads are not supported",
    "application/xml": "XML content is not supported",
    "text/xml": "XML content is not supported",
    "application/x-www-form-urlencoded": "form-encoded data is not supported",
    "text/plain": "plain text content is not supported",
    "text/csv": "CSV content is not supported",
    "application/x-ndjson": "newline-delimited JSON is not supported",
    "application/graphql": "GraphQL content is not supported",
}


class _Skip(Exception):
    """Internal signal: the current operation uses an unsupported construct."""

    def __init__(self, reason: str, content_type: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.content_type = content_type


def is_json_content_type(content_type: str) -> bool:
    """Whether *content_type* is ``application/json`` or a ``+json`` variant.

    Media-type parameters (``; charset=utf-8``) are ignored.
    """
    base = content_type.split(";", 1)[0].strip().lower()
    return base == JSON_CONTENT_TYPE or base.endswith("+json")


def is_valid_env_var_name(name: str) -> bool:
    """Alphanumerics and underscores only, not starting with a digit."""
    return bool(_ENV_VAR_NAME.match(name))


def compile_spec(
    name: str,
    document: Union[bytes, str, dict[str, Any]],
    strict: bool = False,
) -> CachedSpec:
    """Compile *document* into the cached command model for API *name*.

    Args:
        name: The API name under which the spec is registered.
        document: Raw JSON/YAML text or bytes, or an already parsed mapping.
        strict: Raise on the first unsupported feature instead of skipping
            the affected operation.

    Returns:
        The compiled :class:`~aperture.models.CachedSpec`.

    Raises:
        SpecParseError: If the document is malformed, is not OpenAPI 3.x, has
            a dangling or circular reference, declares an invalid
            ``x-aperture-secret`` or references an undeclared scheme.
        UnsupportedFeatureError: In strict mode, for the first operation that
            would otherwise be skipped.
    """
    raw = document if isinstance(document, dict) else parse_document(document)
    validate_openapi_version(raw)

    info = raw.get("info") or {}
    if not isinstance(info, dict):
        raise SpecParseError("'info' must be an object")

    schemes = _compile_security_schemes(raw)
    servers, server_variables = _compile_servers(raw)
    commands, skipped = _compile_operations(raw, schemes, strict)

    if skipped:
        logger.info("Compiled '%s': skipped %d unsupported endpoint(s)", name, len(skipped))
        for endpoint in skipped:
            logger.debug("Skipped %s %s: %s", endpoint.method, endpoint.path, endpoint.reason)

    try:
        return CachedSpec(
            name=name,
            version=str(info.get("version", "0.0.0")),
            commands=commands,
            base_url=servers[0] if servers else None,
            servers=servers,
            security_schemes=schemes,
            skipped_endpoints=skipped,
            server_variables=server_variables,
        )
    except ValueError as exc:
        raise SpecParseError(f"Compiled spec for '{name}' is inconsistent: {exc}") from exc


# --- Security schemes ---


def _compile_security_schemes(raw: dict[str, Any]) -> dict[str, CachedSecurityScheme]:
    components = raw.get("components") or {}
    if not isinstance(components, dict):
        raise SpecParseError("'components' must be an object")
    schemes_raw = components.get("securitySchemes") or {}
    if not isinstance(schemes_raw, dict):
        raise SpecParseError("'components.securitySchemes' must be an object")

    schemes: dict[str, CachedSecurityScheme] = {}
    for scheme_name, scheme_ref in schemes_raw.items():
        scheme_data = resolve_ref(scheme_ref, raw)
        if not isinstance(scheme_data, dict):
            raise SpecParseError(f"Security scheme '{scheme_name}' must be an object")
        schemes[scheme_name] = _compile_security_scheme(scheme_name, scheme_data)
    return schemes


def _compile_security_scheme(name: str, data: dict[str, Any]) -> CachedSecurityScheme:
    raw_type = data.get("type")
    try:
        scheme_type = SecuritySchemeType(raw_type)
    except ValueError:
        raise SpecParseError(
            f"Security scheme '{name}' has unknown type '{raw_type}'"
        ) from None

    common = {
        "name": name,
        "scheme_type": scheme_type,
        "description": data.get("description"),
    }

    if scheme_type == SecuritySchemeType.API_KEY:
        location_raw = data.get("in")
        param_name = data.get("name")
        try:
            location = CredentialLocation(location_raw)
        except ValueError:
            raise SpecParseError(
                f"Security scheme '{name}' has invalid location '{location_raw}'"
            ) from None
        if not param_name:
            raise SpecParseError(f"Security scheme '{name}' is missing 'name'")
        return CachedSecurityScheme(
            **common,
            location=location,
            parameter_name=str(param_name),
            aperture_secret=_parse_aperture_secret(name, data),
        )

    if scheme_type == SecuritySchemeType.HTTP:
        http_scheme = data.get("scheme")
        if not http_scheme:
            raise SpecParseError(f"Security scheme '{name}' is missing 'scheme'")
        return CachedSecurityScheme(
            **common,
            scheme=str(http_scheme),
            location=CredentialLocation.HEADER,
            parameter_name="Authorization",
            aperture_secret=_parse_aperture_secret(name, data),
            bearer_format=data.get("bearerFormat"),
        )

    # oauth2 / openIdConnect / mutualTLS are retained for reference but can
    # never be satisfied, so their extensions are not read.
    return CachedSecurityScheme(**common)


def _parse_aperture_secret(scheme_name: str, data: dict[str, Any]) -> Optional[CachedApertureSecret]:
    if APERTURE_SECRET_EXTENSION not in data:
        return None
    ext = data[APERTURE_SECRET_EXTENSION]
    where = f"{APERTURE_SECRET_EXTENSION} for security scheme '{scheme_name}'"

    if not isinstance(ext, dict):
        raise SpecParseError(f"Invalid {where}: must be an object")
    if "source" not in ext:
        raise SpecParseError(f"Missing 'source' field in {where}")
    source = ext["source"]
    if not isinstance(source, str):
        raise SpecParseError(f"Invalid 'source' field in {where}: must be a string")
    if source != "env":
        raise SpecParseError(f"Unsupported source '{source}' in {where}. Only 'env' is supported.")
    if "name" not in ext:
        raise SpecParseError(f"Missing 'name' field in {where}")
    env_name = ext["name"]
    if not isinstance(env_name, str):
        raise SpecParseError(f"Invalid 'name' field in {where}: must be a string")
    if not env_name:
        raise SpecParseError(f"Empty 'name' field in {where}")
    if not is_valid_env_var_name(env_name):
        raise SpecParseError(
            f"Invalid environment variable name '{env_name}' in {where}. Must contain "
            "only alphanumeric characters and underscores, and not start with a digit."
        )
    return CachedApertureSecret(source=source, name=env_name)


def _unsupported_scheme_label(scheme: CachedSecurityScheme) -> Optional[str]:
    """Short label for schemes that can never be satisfied, ``None`` otherwise."""
    if scheme.scheme_type == SecuritySchemeType.OAUTH2:
        return f"{scheme.name} (OAuth2)"
    if scheme.scheme_type == SecuritySchemeType.OPEN_ID_CONNECT:
        return f"{scheme.name} (OpenID Connect)"
    if scheme.scheme_type == SecuritySchemeType.MUTUAL_TLS:
        return f"{scheme.name} (mutual TLS)"
    if scheme.scheme_type == SecuritySchemeType.HTTP and (scheme.scheme or "").lower() in _UNSUPPORTED_HTTP_SCHEMES:
        return f"{scheme.name} (requires complex flow)"
    return None


# --- Servers ---


def _compile_servers(raw: dict[str, Any]) -> tuple[list[str], dict[str, ServerVariable]]:
    servers_raw = raw.get("servers") or []
    if not isinstance(servers_raw, list):
        raise SpecParseError("'servers' must be an array")

    servers = []
    for server in servers_raw:
        if not isinstance(server, dict) or "url" not in server:
            raise SpecParseError("Each server must be an object with a 'url'")
        servers.append(str(server["url"]))

    variables: dict[str, ServerVariable] = {}
    if servers_raw:
        variables_raw = servers_raw[0].get("variables") or {}
        if not isinstance(variables_raw, dict):
            raise SpecParseError("'servers[0].variables' must be an object")
        for var_name, var in variables_raw.items():
            if not isinstance(var, dict):
                raise SpecParseError(f"Server variable '{var_name}' must be an object")
            default = var.get("default")
            variables[var_name] = ServerVariable(
                default=None if default is None else str(default),
                enum_values=[str(v) for v in var.get("enum") or []],
                description=var.get("description"),
            )
    return servers, variables


# --- Operations ---


def _compile_operations(
    raw: dict[str, Any],
    schemes: dict[str, CachedSecurityScheme],
    strict: bool,
) -> tuple[list[CachedCommand], list[SkippedEndpoint]]:
    paths = raw.get("paths") or {}
    if not isinstance(paths, dict):
        raise SpecParseError("'paths' must be an object")

    global_security = _security_names(raw.get("security") or [], schemes, "global security")
    commands: list[CachedCommand] = []
    skipped: list[SkippedEndpoint] = []
    seen_ids: set[str] = set()

    for path, path_item_ref in paths.items():
        path_item = resolve_ref(path_item_ref, raw)
        if not isinstance(path_item, dict):
            raise SpecParseError(f"Path item '{path}' must be an object")
        path_params = _resolve_list(path_item.get("parameters") or [], raw, f"parameters of {path}")

        for method in HTTPMethod:
            operation = path_item.get(method.value)
            if operation is None:
                continue
            if not isinstance(operation, dict):
                raise SpecParseError(f"Operation {method.value.upper()} {path} must be an object")

            try:
                command = _compile_operation(
                    raw, path, method, operation, path_params, global_security, schemes
                )
                if command.operation_id in seen_ids:
                    raise _Skip(f"duplicate operationId '{command.operation_id}'")
            except _Skip as skip:
                if strict:
                    raise UnsupportedFeatureError(
                        f"{method.value.upper()} {path}: {skip.reason}",
                        method=method.value.upper(),
                        path=path,
                        reason=skip.reason,
                    ) from None
                skipped.append(
                    SkippedEndpoint(
                        method=method.value.upper(),
                        path=path,
                        reason=skip.reason,
                        content_type=skip.content_type,
                    )
                )
                continue

            seen_ids.add(command.operation_id)
            commands.append(command)

    return commands, skipped


def _compile_operation(
    raw: dict[str, Any],
    path: str,
    method: HTTPMethod,
    operation: dict[str, Any],
    path_params: list[dict[str, Any]],
    global_security: list[str],
    schemes: dict[str, CachedSecurityScheme],
) -> CachedCommand:
    where = f"{method.value.upper()} {path}"
    op_params = _resolve_list(operation.get("parameters") or [], raw, f"parameters of {where}")
    parameters = [_compile_parameter(p, raw) for p in _merge_parameters(path_params, op_params)]

    request_body = None
    examples: list[CommandExample] = []
    if operation.get("requestBody") is not None:
        request_body, examples = _compile_request_body(operation["requestBody"], raw)

    op_security = operation.get("security")
    if op_security is None:
        security = list(global_security)
    else:
        security = _security_names(op_security, schemes, f"security of {where}")

    if security:
        labels = [_unsupported_scheme_label(schemes[s]) for s in security]
        if all(labels):
            raise _Skip(f"endpoint requires unsupported authentication: {', '.join(labels)}")

    tags = [str(t) for t in operation.get("tags") or []]
    external_docs = operation.get("externalDocs") or {}

    return CachedCommand(
        name=tags[0] if tags else "default",
        description=operation.get("description"),
        summary=operation.get("summary"),
        operation_id=str(operation.get("operationId") or f"{method.value.upper()}_{path}"),
        method=method,
        path=path,
        parameters=parameters,
        request_body=request_body,
        responses=_compile_responses(operation.get("responses") or {}, raw),
        security_requirements=security,
        tags=tags,
        deprecated=bool(operation.get("deprecated", False)),
        external_docs_url=external_docs.get("url") if isinstance(external_docs, dict) else None,
        examples=examples,
    )


def _resolve_list(items: Any, raw: dict[str, Any], what: str) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        raise SpecParseError(f"{what} must be an array")
    resolved = []
    for item in items:
        obj = resolve_ref(item, raw)
        if not isinstance(obj, dict):
            raise SpecParseError(f"Each entry of {what} must be an object")
        resolved.append(obj)
    return resolved


def _merge_parameters(
    path_params: list[dict[str, Any]],
    op_params: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Path-level parameters first, minus those the operation redefines by (name, in)."""
    op_keys = {(p.get("name", ""), p.get("in", "")) for p in op_params}
    merged = [p for p in path_params if (p.get("name", ""), p.get("in", "")) not in op_keys]
    merged.extend(op_params)
    return merged


def _compile_parameter(param: dict[str, Any], raw: dict[str, Any]) -> CachedParameter:
    name = param.get("name")
    if not name:
        raise SpecParseError("Parameter is missing 'name'")
    location_raw = param.get("in")
    try:
        location = ParameterLocation(location_raw)
    except ValueError:
        raise SpecParseError(f"Parameter '{name}' has invalid location '{location_raw}'") from None

    if "content" in param and "schema" not in param:
        raise _Skip(f"parameter '{name}' uses unsupported content-based serialization")

    schema = resolve_ref(param.get("schema") or {}, raw)
    if not isinstance(schema, dict):
        schema = {}

    required = bool(param.get("required", False))
    if location == ParameterLocation.PATH:
        required = True

    enum_values = schema.get("enum")
    return CachedParameter(
        name=str(name),
        location=location,
        required=required,
        schema_type=_schema_type(param.get("schema"), schema),
        description=param.get("description"),
        default=schema.get("default"),
        enum_values=list(enum_values) if isinstance(enum_values, list) else None,
    )


def _schema_type(original: Any, resolved: dict[str, Any]) -> Optional[str]:
    """The JSON type of a schema, or its ``$ref`` when no type is declared.

    OpenAPI 3.1 type arrays (``["string", "null"]``) yield the first non-null type.
    """
    type_value = resolved.get("type")
    if isinstance(type_value, list):
        non_null = [t for t in type_value if t != "null"]
        type_value = non_null[0] if non_null else None
    if type_value:
        return str(type_value)
    if isinstance(original, dict) and "$ref" in original:
        return str(original["$ref"])
    return None


def _schema_ref(schema: Any) -> Optional[str]:
    if isinstance(schema, dict):
        if "$ref" in schema:
            return str(schema["$ref"])
        if "type" in schema:
            return str(schema["type"])
    return None


def _pick_json_content_type(content: dict[str, Any]) -> Optional[str]:
    json_types = [ct for ct in content if is_json_content_type(ct)]
    if not json_types:
        return None
    for ct in json_types:
        if ct.split(";", 1)[0].strip().lower() == JSON_CONTENT_TYPE:
            return ct
    return json_types[0]


def _compile_request_body(
    body_ref: Any, raw: dict[str, Any]
) -> tuple[CachedRequestBody, list[CommandExample]]:
    body = resolve_ref(body_ref, raw)
    if not isinstance(body, dict):
        raise SpecParseError("requestBody must be an object")
    content = body.get("content") or {}
    if not isinstance(content, dict):
        raise SpecParseError("requestBody.content must be an object")

    content_type = _pick_json_content_type(content)
    if content_type is None:
        described = ", ".join(
            f"{ct} ({_UNSUPPORTED_CONTENT_REASONS.get(ct.split(';', 1)[0].strip().lower(), _generic_reason(ct))})"
            for ct in content
        )
        raise _Skip("endpoint has no supported content types", content_type=described or None)

    media = resolve_ref(content[content_type], raw) or {}
    if not isinstance(media, dict):
        media = {}

    examples: list[CommandExample] = []
    for example_name, example_ref in (media.get("examples") or {}).items():
        example = resolve_ref(example_ref, raw)
        if isinstance(example, dict):
            examples.append(
                CommandExample(
                    name=str(example_name),
                    summary=example.get("summary"),
                    value=example.get("value"),
                )
            )

    example_value = media.get("example")
    if example_value is None and examples:
        example_value = examples[0].value

    return (
        CachedRequestBody(
            content_type=content_type,
            required=bool(body.get("required", False)),
            schema_ref=_schema_ref(media.get("schema")),
            example=example_value,
        ),
        examples,
    )


def _generic_reason(content_type: str) -> str:
    if content_type.lower().startswith("image/"):
        return "image uploads are not supported"
    return "is not supported"


def _compile_responses(responses: Any, raw: dict[str, Any]) -> list[CachedResponse]:
    if not isinstance(responses, dict):
        raise SpecParseError("responses must be an object")

    result: list[CachedResponse] = []
    for status_code, response_ref in responses.items():
        response = resolve_ref(response_ref, raw)
        if not isinstance(response, dict):
            continue
        content = response.get("content") or {}
        content_type = _pick_json_content_type(content) or next(iter(content), None)
        media = resolve_ref(content[content_type], raw) if content_type else {}
        if not isinstance(media, dict):
            media = {}
        result.append(
            CachedResponse(
                status_code=str(status_code),
                content_type=content_type,
                schema_ref=_schema_ref(media.get("schema")),
                example=media.get("example"),
            )
        )
    return result


def _security_names(
    requirements: Any,
    schemes: dict[str, CachedSecurityScheme],
    where: str,
) -> list[str]:
    """Flatten a list of security requirement objects into ordered scheme names."""
    if not isinstance(requirements, list):
        raise SpecParseError(f"{where} must be an array")
    names: list[str] = []
    for requirement in requirements:
        if not isinstance(requirement, dict):
            raise SpecParseError(f"Each entry of {where} must be an object")
        for scheme_name in requirement:
            if scheme_name not in schemes:
                raise SpecParseError(f"{where} references undeclared security scheme '{scheme_name}'")
            if scheme_name not in names:
                names.append(scheme_name)
    return names
