"""Where secret values come from.

The resolver never reads :data:`os.environ` directly; it asks a
:class:`CredentialLookup`. :class:`EnvironmentCredentials` is the default,
:class:`MappingCredentials` lets tests supply values explicitly.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class CredentialLookup(Protocol):
    """Returns the value of a named secret, or ``None`` when it is not set."""

    def get(self, name: str) -> Optional[str]: ...


class EnvironmentCredentials:
    """Reads secrets from the process environment at lookup time."""

    def get(self, name: str) -> Optional[str]:
        return os.environ.get(name)


class MappingCredentials:
    """Reads secrets from a fixed mapping."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)
