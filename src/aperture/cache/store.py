"""Persistent store for compiled specs.

Layout below the config root (see :mod:`aperture.config`)::

    specs/<name>.yaml               source document, byte-for-byte
    .cache/<name>.json              serialised CachedSpec
    .cache/cache_metadata.json      GlobalCacheMetadata (fingerprints)

:meth:`CacheStore.load` is strict and reports every problem as a
:class:`~aperture.exceptions.CacheError` subclass.
:meth:`CacheStore.load_or_compile` is what callers normally use: a missing,
corrupted, stale or version-mismatched cache is recompiled from the source
transparently. Blobs are never migrated between format versions.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from aperture.cache.fingerprint import content_hash, file_mtime, fingerprint_bytes
from aperture.config import get_cache_dir, get_config_dir, get_specs_dir
from aperture.exceptions import (
    CacheCorruptedError,
    CacheError,
    CacheMissError,
    CacheStaleError,
    CacheVersionMismatch,
    ConfigError,
    FileSystemError,
)
from aperture.fs import FileSystem, OsFileSystem
from aperture.models import (
    CACHE_FORMAT_VERSION,
    CachedSpec,
    GlobalCacheMetadata,
    SpecFingerprint,
    SpecMetadata,
)
from aperture.output import get_output
from aperture.parser.compiler import compile_spec
from aperture.parser.loader import read_source

logger = logging.getLogger(__name__)

METADATA_FILENAME = "cache_metadata.json"
SPEC_SUFFIX = ".yaml"
CACHE_SUFFIX = ".json"

_MAX_NAME_LENGTH = 64
_API_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_api_name(name: str) -> str:
    """Return *name* unchanged if it is safe to use as a file stem.

    Raises:
        ConfigError: If the name is empty, longer than 64 characters, does not
            start with an ASCII letter or digit, or contains characters other
            than ASCII alphanumerics, ``.``, ``-`` and ``_``.
    """
    if not name:
        raise ConfigError("Invalid API name: name cannot be empty")
    if len(name) > _MAX_NAME_LENGTH:
        raise ConfigError(f"Invalid API name '{name}': longer than {_MAX_NAME_LENGTH} characters")
    if not _API_NAME.match(name):
        raise ConfigError(
            f"Invalid API name '{name}': must start with a letter or digit and contain only "
            "letters, digits, '.', '-' and '_'"
        )
    return name


class CacheStore:
    """Compiled-spec store rooted at a config directory.

    Args:
        root: Config root; defaults to :func:`~aperture.config.get_config_dir`.
        fs: Filesystem implementation; defaults to :class:`~aperture.fs.OsFileSystem`.

    Example::

        store = CacheStore(Path("~/.config/aperture").expanduser())
        store.add_spec("petstore", Path("petstore.yaml").read_bytes())
        spec = store.load_or_compile("petstore")
    """

    def __init__(self, root: Optional[Union[str, Path]] = None, fs: Optional[FileSystem] = None) -> None:
        self.root = Path(root) if root is not None else get_config_dir()
        self.fs = fs or OsFileSystem()

    # ------------------------------------------------------------------ #
    # Paths
    # ------------------------------------------------------------------ #

    @property
    def specs_dir(self) -> Path:
        return get_specs_dir(self.root)

    @property
    def cache_dir(self) -> Path:
        return get_cache_dir(self.root)

    def spec_path(self, name: str) -> Path:
        return self.specs_dir / f"{validate_api_name(name)}{SPEC_SUFFIX}"

    def cache_path(self, name: str) -> Path:
        return self.cache_dir / f"{validate_api_name(name)}{CACHE_SUFFIX}"

    @property
    def metadata_path(self) -> Path:
        return self.cache_dir / METADATA_FILENAME

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def add_spec(
        self,
        name: str,
        document: Union[bytes, str],
        force: bool = False,
        strict: bool = False,
    ) -> CachedSpec:
        """Compile *document*, store it as the source of *name* and cache the result.

        The document is compiled before anything is written, so a malformed
        document leaves the store untouched.

        Args:
            name: API name.
            document: Raw JSON or YAML document.
            force: Replace an existing API of the same name.
            strict: Compile in strict mode.

        Raises:
            ConfigError: If the name is invalid, or already registered and
                *force* is not set.
            SpecParseError: If the document cannot be compiled.
        """
        source_path = self.spec_path(name)
        if self.fs.exists(source_path) and not force:
            raise ConfigError(f"API '{name}' already exists. Use force to overwrite it.")

        data = document.encode("utf-8") if isinstance(document, str) else document
        spec = compile_spec(name, data, strict=strict)

        self.fs.write_bytes(source_path, data)
        self.save(spec, fingerprint_bytes(data, file_mtime(source_path, self.fs)))
        get_output().info(
            f"Added API '{name}' with {len(spec.commands)} operation(s)"
            + (f", {len(spec.skipped_endpoints)} skipped" if spec.skipped_endpoints else "")
        )
        return spec

    def add_spec_from_source(
        self,
        name: str,
        source: Union[str, Path],
        force: bool = False,
        strict: bool = False,
    ) -> CachedSpec:
        """Like :meth:`add_spec`, reading the document from a file path or URL."""
        return self.add_spec(name, read_source(source, self.fs), force=force, strict=strict)

    def remove(self, name: str) -> None:
        """Delete the source, the compiled blob and the metadata entry of *name*.

        Raises:
            ConfigError: If *name* is not registered.
        """
        source_path = self.spec_path(name)
        blob_path = self.cache_path(name)
        if not self.fs.exists(source_path) and not self.fs.exists(blob_path):
            raise ConfigError(f"API '{name}' not found")
        for path in (source_path, blob_path):
            if self.fs.exists(path):
                self.fs.remove(path)
        metadata = self._load_metadata()
        if metadata.specs.pop(name, None) is not None:
            self._save_metadata(metadata)

    def list_specs(self) -> list[str]:
        """Names of all registered APIs, sorted."""
        return sorted(
            entry[: -len(SPEC_SUFFIX)]
            for entry in self.fs.list_dir(self.specs_dir)
            if entry.endswith(SPEC_SUFFIX)
        )

    def list_cached_specs(self) -> list[str]:
        """Names recorded in the cache metadata, sorted."""
        return sorted(self._load_metadata().specs)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def save(self, spec: CachedSpec, fingerprint: Optional[SpecFingerprint] = None) -> None:
        """Atomically write the compiled blob of *spec* and record *fingerprint*."""
        blob = spec.model_dump_json(indent=2).encode("utf-8")
        self.fs.write_bytes(self.cache_path(spec.name), blob)

        metadata = self._load_metadata()
        metadata.specs[spec.name] = SpecMetadata(
            updated_at=datetime.now(timezone.utc).isoformat(),
            cache_file_size=len(blob),
            fingerprint=fingerprint,
        )
        self._save_metadata(metadata)
        logger.debug("Cached compiled spec '%s' (%d bytes)", spec.name, len(blob))

    def load(self, name: str) -> CachedSpec:
        """Load the compiled spec of *name* without recompiling.

        Raises:
            CacheMissError: No compiled blob exists.
            CacheCorruptedError: The blob cannot be deserialised.
            CacheVersionMismatch: The blob has another ``cache_format_version``.
            CacheStaleError: The source changed since compilation.
        """
        blob_path = self.cache_path(name)
        if not self.fs.is_file(blob_path):
            raise CacheMissError(f"No cached spec for API '{name}'", name)

        try:
            raw = json.loads(self.fs.read_bytes(blob_path))
        except (json.JSONDecodeError, UnicodeDecodeError, FileSystemError) as exc:
            raise CacheCorruptedError(f"Cached spec for '{name}' is unreadable: {exc}", name) from exc
        if not isinstance(raw, dict):
            raise CacheCorruptedError(f"Cached spec for '{name}' is not an object", name)

        found = raw.get("cache_format_version")
        if found != CACHE_FORMAT_VERSION:
            raise CacheVersionMismatch(name, found if isinstance(found, int) else -1, CACHE_FORMAT_VERSION)

        try:
            spec = CachedSpec.model_validate(raw)
        except ValidationError as exc:
            raise CacheCorruptedError(f"Cached spec for '{name}' is invalid: {exc}", name) from exc

        if not self._source_matches(name):
            raise CacheStaleError(name)
        return spec

    def load_or_compile(self, name: str, strict: bool = False) -> CachedSpec:
        """Load the compiled spec of *name*, recompiling it when needed.

        Version mismatches, staleness and corruption never reach the caller:
        the source is recompiled and the new blob saved.

        Raises:
            CacheMissError: Neither a usable blob nor a source document exists.
            SpecParseError: The source document no longer compiles.
        """
        try:
            return self.load(name)
        except CacheError as exc:
            source_path = self.spec_path(name)
            if not self.fs.is_file(source_path):
                if isinstance(exc, CacheMissError):
                    raise
                raise CacheMissError(
                    f"Cached spec for '{name}' is unusable and its source is missing", name
                ) from exc
            logger.debug("Recompiling '%s': %s", name, exc.message)
            get_output().debug(f"Recompiling '{name}': {exc.message}")

        data = self.fs.read_bytes(source_path)
        spec = compile_spec(name, data, strict=strict)
        self.save(spec, fingerprint_bytes(data, file_mtime(source_path, self.fs)))
        return spec

    def load_all(self) -> dict[str, CachedSpec]:
        """Every registered API, compiled. Used as the input of command search."""
        return {name: self.load_or_compile(name) for name in self.list_specs()}

    def is_fresh(self, name: str) -> bool:
        """Whether :meth:`load` would succeed without recompiling."""
        try:
            self.load(name)
        except CacheError:
            return False
        return True

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _source_matches(self, name: str) -> bool:
        """Compare the current source against the fingerprint recorded at compile time.

        A missing source cannot be recompiled, so the cached blob stands. A
        source without a recorded fingerprint is treated as changed.
        """
        source_path = self.spec_path(name)
        if not self.fs.is_file(source_path):
            return True
        entry = self._load_metadata().specs.get(name)
        if entry is None or entry.fingerprint is None:
            return False
        recorded = entry.fingerprint

        size = self.fs.stat_size(source_path)
        if recorded.file_size is not None and size is not None and size != recorded.file_size:
            return False
        try:
            data = self.fs.read_bytes(source_path)
        except FileSystemError:
            return True
        return content_hash(data) == recorded.content_hash

    def _load_metadata(self) -> GlobalCacheMetadata:
        path = self.metadata_path
        if not self.fs.is_file(path):
            return GlobalCacheMetadata()
        try:
            metadata = GlobalCacheMetadata.model_validate_json(self.fs.read_bytes(path))
        except ValidationError as exc:
            logger.warning("Ignoring unreadable cache metadata at %s: %s", path, exc)
            return GlobalCacheMetadata()
        if metadata.cache_format_version != CACHE_FORMAT_VERSION:
            # Fingerprints written by another format version are not trusted.
            return GlobalCacheMetadata()
        return metadata

    def _save_metadata(self, metadata: GlobalCacheMetadata) -> None:
        self.fs.write_bytes(self.metadata_path, metadata.model_dump_json(indent=2).encode("utf-8"))


def load(cache_root: Union[str, Path], api_name: str, fs: Optional[FileSystem] = None) -> CachedSpec:
    """Load *api_name* from the store at *cache_root*, recompiling when needed."""
    return CacheStore(cache_root, fs).load_or_compile(api_name)
