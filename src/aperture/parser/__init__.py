"""OpenAPI compiler -- load, validate and compile documents into the cached model.

Typical usage::

    from aperture.parser import compile_spec, read_source

    data = read_source("petstore.yaml")
    spec = compile_spec("petstore", data)

Sub-modules:

* :mod:`~aperture.parser.loader` -- I/O (file, URL), JSON/YAML parsing and
  OpenAPI version validation.
* :mod:`~aperture.parser.resolver` -- ``$ref`` resolution with cycle detection.
* :mod:`~aperture.parser.compiler` -- walks the document and produces a
  :class:`~aperture.models.CachedSpec`.
"""

from aperture.parser.compiler import compile_spec, is_json_content_type
from aperture.parser.loader import parse_document, read_source, validate_openapi_version
from aperture.parser.resolver import resolve_ref, resolve_refs

__all__ = [
    "compile_spec",
    "is_json_content_type",
    "parse_document",
    "read_source",
    "resolve_ref",
    "resolve_refs",
    "validate_openapi_version",
]
