"""Read OpenAPI documents and turn them into Python dictionaries.

This module handles the I/O half of compilation: fetching the raw bytes of a
document (local file or HTTP(S) URL), parsing them as JSON or YAML, and
checking that the document declares a supported OpenAPI version (3.x).

Public functions:

* :func:`read_source` -- return the exact bytes of a document so they can be
  fingerprinted before parsing.
* :func:`parse_document` -- JSON first, then YAML.
* :func:`validate_openapi_version` -- return the ``openapi`` version string,
  rejecting Swagger 2.x and unsupported versions.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Union

import httpx
import yaml

from aperture.exceptions import FileSystemError, SpecParseError
from aperture.fs import FileSystem, OsFileSystem


def read_source(
    source: Union[str, Path],
    fs: Optional[FileSystem] = None,
    timeout: float = 30.0,
) -> bytes:
    """Return the raw bytes of a document from a file path or an HTTP(S) URL.

    Args:
        source: A URL (``http://`` or ``https://``) or a file path.
        fs: Filesystem used for local paths.
        timeout: Timeout in seconds for URL fetches.

    Raises:
        SpecParseError: If the source cannot be read or is empty.
    """
    text = str(source)
    if text.startswith(("http://", "https://")):
        return _read_url(text, timeout)

    fs = fs or OsFileSystem()
    if not fs.is_file(source):
        raise SpecParseError(f"Spec file not found: {source}")
    try:
        data = fs.read_bytes(source)
    except FileSystemError as exc:
        raise SpecParseError(f"Failed to read spec file {source}: {exc}") from exc
    if not data.strip():
        raise SpecParseError(f"Spec file is empty: {source}")
    return data


def _read_url(url: str, timeout: float) -> bytes:
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise SpecParseError(
            f"HTTP {exc.response.status_code} fetching spec from {url}"
        ) from exc
    except httpx.RequestError as exc:
        raise SpecParseError(f"Failed to fetch spec from {url}: {exc}") from exc
    if not response.content.strip():
        raise SpecParseError(f"Empty response fetching spec from {url}")
    return response.content


def parse_document(data: Union[bytes, str], hint: str = "") -> dict[str, Any]:
    """Parse *data* as JSON or YAML.

    Tries JSON first (unless *hint* is ``"yaml"``), then falls back to YAML.
    Valid JSON is also valid YAML, but JSON parsing is stricter and faster.

    Args:
        data: The raw document.
        hint: Optional format hint (``"json"`` or ``"yaml"``).

    Returns:
        The parsed top-level mapping.

    Raises:
        SpecParseError: If the content cannot be parsed as either format, or
            does not contain a mapping at the top level.
    """
    if isinstance(data, bytes):
        try:
            content = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise SpecParseError(f"Spec is not valid UTF-8: {exc}") from exc
    else:
        content = data

    if not content.strip():
        raise SpecParseError("Spec document is empty")

    json_error: Exception | None = None
    yaml_error: Exception | None = None

    if hint != "yaml":
        try:
            result = json.loads(content)
        except json.JSONDecodeError as exc:
            json_error = exc
            if hint == "json":
                raise SpecParseError(f"Invalid JSON: {exc}") from exc
        else:
            return _require_mapping(result)

    try:
        result = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        yaml_error = exc
    else:
        return _require_mapping(result)

    msg = "Failed to parse spec as JSON or YAML"
    if json_error:
        msg += f"\n  JSON error: {json_error}"
    if yaml_error:
        msg += f"\n  YAML error: {yaml_error}"
    raise SpecParseError(msg)


def _require_mapping(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        kind = type(result).__name__ if result is not None else "empty document"
        raise SpecParseError(f"Spec must be a JSON/YAML object (got {kind})")
    return result


def validate_openapi_version(spec: dict[str, Any]) -> str:
    """Validate and return the OpenAPI version string.

    Supports OpenAPI 3.x. Raises for Swagger 2.x, a missing version field,
    or any other major version.

    Raises:
        SpecParseError: If the version is missing, unsupported, or indicates
            Swagger 2.x.
    """
    if "swagger" in spec:
        swagger_ver = str(spec["swagger"])
        raise SpecParseError(
            f"Swagger {swagger_ver} is not supported. "
            "Only OpenAPI 3.x documents are supported. "
            "Consider converting with https://converter.swagger.io"
        )

    openapi_version = spec.get("openapi")
    if openapi_version is None:
        raise SpecParseError("Missing 'openapi' field. Is this an OpenAPI 3.x document?")

    version_str = str(openapi_version)
    if version_str.startswith("3."):
        return version_str

    raise SpecParseError(
        f"Unsupported OpenAPI version: {version_str}. Only OpenAPI 3.x is supported."
    )
