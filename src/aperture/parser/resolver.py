"""``$ref`` handling for OpenAPI documents.

Only internal references (``#/...``) are supported. External file or URL
references raise :class:`~aperture.exceptions.SpecParseError`.

Two entry points:

* :func:`resolve_ref` -- shallow: follow a chain of references until a
  concrete object is reached. Used by the compiler for parameters, request
  bodies, responses, path items and security schemes, where the referenced
  *object* matters but schema references should stay symbolic.
* :func:`resolve_refs` -- deep: return a copy of the whole document with
  every reference inlined. Self-referencing schemas (tree-like structures)
  keep their ``$ref`` dict at the cycle point.
"""

from __future__ import annotations

import copy
from typing import Any

from aperture.exceptions import SpecParseError


def lookup_pointer(ref: str, root: dict[str, Any]) -> Any:
    """Return the value that the JSON Pointer *ref* designates within *root*.

    Handles RFC 6901 escaping (``~0`` for ``~``, ``~1`` for ``/``).

    Raises:
        SpecParseError: If *ref* is external or any segment does not exist.
    """
    if not isinstance(ref, str) or not ref.startswith("#/"):
        raise SpecParseError(
            f"External $ref not supported: {ref}. "
            "Only internal references (#/...) are handled."
        )

    current: Any = root
    for segment in ref[2:].split("/"):
        segment = segment.replace("~1", "/").replace("~0", "~")
        if isinstance(current, dict):
            if segment not in current:
                raise SpecParseError(
                    f"Cannot resolve $ref '{ref}': key '{segment}' not found at path"
                )
            current = current[segment]
        elif isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError) as exc:
                raise SpecParseError(
                    f"Cannot resolve $ref '{ref}': invalid array index '{segment}'"
                ) from exc
        else:
            raise SpecParseError(
                f"Cannot resolve $ref '{ref}': cannot navigate into {type(current).__name__}"
            )
    return current


def resolve_ref(obj: Any, root: dict[str, Any]) -> Any:
    """Follow ``$ref`` indirections on *obj* until a concrete value is reached.

    Raises:
        SpecParseError: On external, dangling or circular references.
    """
    seen: list[str] = []
    while isinstance(obj, dict) and "$ref" in obj:
        ref = obj["$ref"]
        if ref in seen:
            chain = " -> ".join(seen + [ref])
            raise SpecParseError(f"Circular $ref detected: {chain}")
        seen.append(ref)
        obj = lookup_pointer(ref, root)
    return obj


def resolve_refs(spec: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of *spec* with every internal ``$ref`` inlined.

    Raises:
        SpecParseError: If a ``$ref`` is external or points to a missing path.
    """
    root = copy.deepcopy(spec)
    return _deep_resolve(root, root, frozenset())


def _deep_resolve(obj: Any, root: dict[str, Any], seen: frozenset[str]) -> Any:
    # ``seen`` holds the refs on the current branch only, so sibling
    # references to the same target are both inlined.
    if isinstance(obj, dict):
        if "$ref" in obj:
            ref = obj["$ref"]
            if ref in seen:
                return obj
            return _deep_resolve(lookup_pointer(ref, root), root, seen | {ref})
        return {key: _deep_resolve(value, root, seen) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_deep_resolve(item, root, seen) for item in obj]
    return obj
