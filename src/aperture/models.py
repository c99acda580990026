"""Canonical Pydantic models shared across all aperture modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into two groups:

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`ApiConfig`, :class:`ResponseCacheConfig`, :class:`RetryPolicy`
    and :class:`GlobalConfig`.

**Cached model** -- produced by the spec compiler, persisted by the cache
store and consumed by the translator and executor:
    :class:`HTTPMethod`, :class:`ParameterLocation`, :class:`CachedParameter`,
    :class:`CachedRequestBody`, :class:`CachedResponse`,
    :class:`CachedSecurityScheme`, :class:`CachedCommand`,
    :class:`CachedSpec`, plus the bookkeeping models
    :class:`SpecFingerprint`, :class:`SpecMetadata` and
    :class:`GlobalCacheMetadata`.

A :class:`CachedSpec` is never mutated after compilation. When the source
document changes or :data:`CACHE_FORMAT_VERSION` is bumped it is discarded
and compiled again.
"""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

CACHE_FORMAT_VERSION = 3
"""Version stamp of the serialised :class:`CachedSpec` layout."""


# --- Enumerations ---


class HTTPMethod(str, enum.Enum):
    """HTTP methods recognised by OpenAPI 3.x path-item objects."""

    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"
    HEAD = "head"
    OPTIONS = "options"
    TRACE = "trace"

    @property
    def is_idempotent(self) -> bool:
        """Whether repeating the request has the same effect as sending it once (RFC 9110)."""
        return self not in (HTTPMethod.POST, HTTPMethod.PATCH)

    @property
    def is_safe(self) -> bool:
        """Whether the method is read-only and therefore cacheable by default."""
        return self in (HTTPMethod.GET, HTTPMethod.HEAD, HTTPMethod.OPTIONS)


class ParameterLocation(str, enum.Enum):
    """Locations where an API parameter can appear, per OpenAPI ``in`` field."""

    QUERY = "query"
    HEADER = "header"
    PATH = "path"
    COOKIE = "cookie"


class SecuritySchemeType(str, enum.Enum):
    """The ``type`` discriminant of an OpenAPI *Security Scheme Object*."""

    API_KEY = "apiKey"
    HTTP = "http"
    OAUTH2 = "oauth2"
    OPEN_ID_CONNECT = "openIdConnect"
    MUTUAL_TLS = "mutualTLS"


class CredentialLocation(str, enum.Enum):
    """Where a resolved credential is placed on the outgoing request."""

    HEADER = "header"
    QUERY = "query"
    COOKIE = "cookie"


class SecretSource(str, enum.Enum):
    """Sources a ``x-aperture-secret`` binding may read from."""

    ENV = "env"


# --- Configuration models ---


class CachedApertureSecret(BaseModel):
    """Binding of a security scheme to a concrete secret.

    Parsed from the ``x-aperture-secret`` extension of a security scheme,
    or declared per API in :attr:`ApiConfig.secrets`.

    Example::

        CachedApertureSecret(source="env", name="DEMO_KEY")
    """

    source: SecretSource = SecretSource.ENV
    name: str = Field(description="Environment variable holding the credential")


class ApiConfig(BaseModel):
    """Per-API overrides stored in :attr:`GlobalConfig.api_configs`."""

    base_url_override: Optional[str] = None
    environment_urls: dict[str, str] = Field(
        default_factory=dict,
        description="Base URL per environment name (selected by APERTURE_ENV)",
    )
    secrets: dict[str, CachedApertureSecret] = Field(
        default_factory=dict,
        description="Secret bindings per security scheme; take precedence over x-aperture-secret",
    )


class ResponseCacheConfig(BaseModel):
    """Response cache settings.

    Only successful (2xx) responses are stored. Mutating methods bypass the
    cache unless ``cache_mutating`` is set, and requests that carried
    credentials bypass it unless ``allow_authenticated`` is set.
    """

    enabled: bool = Field(default=True, description="Enable response caching")
    ttl_seconds: int = Field(default=300, ge=0, description="Cache TTL in seconds")
    max_entries: int = Field(default=1000, ge=1, description="Maximum cached responses")
    cache_mutating: bool = Field(
        default=False,
        description="Also cache POST/PUT/PATCH/DELETE responses",
    )
    allow_authenticated: bool = Field(
        default=False,
        description="Cache responses of requests that carried credentials",
    )
    methods: Optional[list[HTTPMethod]] = Field(
        default=None,
        description="Explicit list of cacheable methods (overrides cache_mutating)",
    )


class RetryPolicy(BaseModel):
    """Retry and backoff settings for one logical call.

    The delay before retry ``n`` (0-based) is
    ``initial_delay * backoff_multiplier ** n`` capped at ``max_delay``,
    plus up to 25% jitter when ``jitter`` is enabled.
    """

    max_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts, including the first")
    initial_delay: float = Field(default=0.1, ge=0, description="Delay before the first retry (seconds)")
    max_delay: float = Field(default=5.0, ge=0, description="Upper bound for a single delay (seconds)")
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True
    force_retry: bool = Field(
        default=False,
        description="Retry non-idempotent requests even without an idempotency key",
    )


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``<config root>/config.json``.

    Loaded and saved by :func:`~aperture.config.load_global_config` and
    :func:`~aperture.config.save_global_config`.
    """

    default_timeout_secs: Optional[float] = Field(
        default=None, description="Default overall deadline per invocation"
    )
    api_configs: dict[str, ApiConfig] = Field(default_factory=dict)
    cache: ResponseCacheConfig = Field(default_factory=ResponseCacheConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


# --- Cached model ---


class CachedParameter(BaseModel):
    """A single parameter of a compiled command."""

    name: str
    location: ParameterLocation
    required: bool = False
    schema_type: Optional[str] = Field(
        default=None, description="JSON Schema type or referenced schema name"
    )
    description: Optional[str] = None
    default: Any = None
    enum_values: Optional[list[Any]] = None


class CachedRequestBody(BaseModel):
    """Request body metadata of a compiled command."""

    content_type: str = "application/json"
    required: bool = False
    schema_ref: Optional[str] = None
    example: Any = None


class CachedResponse(BaseModel):
    """Declared response of a compiled command for one status code."""

    status_code: str
    content_type: Optional[str] = None
    schema_ref: Optional[str] = None
    example: Any = None


class CommandExample(BaseModel):
    """A named request-body example declared on the operation."""

    name: str
    summary: Optional[str] = None
    value: Any = None


class CachedSecurityScheme(BaseModel):
    """A security scheme of the compiled spec.

    Only the fields relevant to ``scheme_type`` are populated. For ``http``
    schemes ``location`` is always ``header`` and ``parameter_name`` is
    ``Authorization``.
    """

    name: str
    scheme_type: SecuritySchemeType
    scheme: Optional[str] = Field(default=None, description="HTTP auth scheme: bearer, basic, ...")
    location: Optional[CredentialLocation] = None
    parameter_name: Optional[str] = None
    aperture_secret: Optional[CachedApertureSecret] = None
    description: Optional[str] = None
    bearer_format: Optional[str] = None


class CachedCommand(BaseModel):
    """One compiled operation (path + method) invocable by ``operation_id``."""

    name: str = Field(description="Command group: the first tag, or 'default'")
    description: Optional[str] = None
    summary: Optional[str] = None
    operation_id: str
    method: HTTPMethod
    path: str
    parameters: list[CachedParameter] = Field(default_factory=list)
    request_body: Optional[CachedRequestBody] = None
    responses: list[CachedResponse] = Field(default_factory=list)
    security_requirements: list[str] = Field(
        default_factory=list,
        description="Scheme names in preference order; the first satisfiable one is used",
    )
    tags: list[str] = Field(default_factory=list)
    deprecated: bool = False
    external_docs_url: Optional[str] = None
    examples: list[CommandExample] = Field(default_factory=list)

    def parameters_in(self, location: ParameterLocation) -> list[CachedParameter]:
        """Return the parameters declared at *location*, in declaration order."""
        return [p for p in self.parameters if p.location == location]


class SkippedEndpoint(BaseModel):
    """Diagnostic record of an operation left out of the compiled spec."""

    method: str
    path: str
    reason: str
    content_type: Optional[str] = None


class ServerVariable(BaseModel):
    """A variable of the first server URL template (``{region}`` etc.)."""

    default: Optional[str] = None
    enum_values: list[str] = Field(default_factory=list)
    description: Optional[str] = None


class CachedSpec(BaseModel):
    """Versioned, serialisable compiled representation of one API.

    Produced by :func:`~aperture.parser.compile_spec` and persisted by
    :class:`~aperture.cache.store.CacheStore`.

    Invariants, checked on construction and on every load:

    * ``operation_id`` is unique across ``commands``;
    * every name in a command's ``security_requirements`` is a key of
      ``security_schemes``.
    """

    name: str
    version: str
    commands: list[CachedCommand] = Field(default_factory=list)
    base_url: Optional[str] = None
    servers: list[str] = Field(default_factory=list)
    security_schemes: dict[str, CachedSecurityScheme] = Field(default_factory=dict)
    cache_format_version: int = CACHE_FORMAT_VERSION
    skipped_endpoints: list[SkippedEndpoint] = Field(default_factory=list)
    server_variables: dict[str, ServerVariable] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_invariants(self) -> CachedSpec:
        seen: set[str] = set()
        for command in self.commands:
            if command.operation_id in seen:
                raise ValueError(f"Duplicate operation_id '{command.operation_id}'")
            seen.add(command.operation_id)
            for scheme_name in command.security_requirements:
                if scheme_name not in self.security_schemes:
                    raise ValueError(
                        f"Command '{command.operation_id}' requires undeclared "
                        f"security scheme '{scheme_name}'"
                    )
        return self

    def find_command(self, operation_id: str) -> Optional[CachedCommand]:
        """Return the command with *operation_id*, or ``None``."""
        for command in self.commands:
            if command.operation_id == operation_id:
                return command
        return None


# --- Cache bookkeeping ---


class SpecFingerprint(BaseModel):
    """Fingerprint of a source document recorded at compile time.

    ``content_hash`` is authoritative. A differing ``file_size`` lets the
    store declare a cache stale without hashing; ``mtime_secs`` is recorded
    for diagnostics only.
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    mtime_secs: Optional[int] = None
    file_size: Optional[int] = None


class SpecMetadata(BaseModel):
    """Per-API entry of :class:`GlobalCacheMetadata`."""

    updated_at: str
    cache_file_size: int = 0
    fingerprint: Optional[SpecFingerprint] = None


class GlobalCacheMetadata(BaseModel):
    """Contents of ``.cache/cache_metadata.json``."""

    cache_format_version: int = CACHE_FORMAT_VERSION
    specs: dict[str, SpecMetadata] = Field(default_factory=dict)
