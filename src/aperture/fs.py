"""Filesystem abstraction used by the cache store and the config layer.

The store and the compiler never touch :mod:`os` directly. They go through a
:class:`FileSystem`, which lets tests swap in :class:`InMemoryFileSystem`
and drive staleness or corruption scenarios without a real directory.

:class:`OsFileSystem` writes atomically: data goes to a temporary file in the
destination directory, is flushed and fsynced, then renamed over the target
with :func:`os.replace`. A reader therefore sees either the previous content
or the new content, never a partial file.
"""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from aperture.exceptions import FileSystemError

PathLike = Union[str, Path]


class FileSystem(ABC):
    """Abstract filesystem interface.

    All paths are accepted as :class:`str` or :class:`~pathlib.Path`. Failures
    surface as :class:`~aperture.exceptions.FileSystemError`.
    """

    @abstractmethod
    def read_bytes(self, path: PathLike) -> bytes:
        """Return the full content of *path*."""

    @abstractmethod
    def write_bytes(self, path: PathLike, data: bytes) -> None:
        """Atomically replace the content of *path*, creating parent directories."""

    @abstractmethod
    def exists(self, path: PathLike) -> bool:
        """Whether *path* exists (file or directory)."""

    @abstractmethod
    def is_file(self, path: PathLike) -> bool:
        """Whether *path* exists and is a regular file."""

    @abstractmethod
    def mkdir(self, path: PathLike) -> None:
        """Create *path* and any missing parents. Existing directories are fine."""

    @abstractmethod
    def remove(self, path: PathLike) -> None:
        """Delete the file at *path*."""

    @abstractmethod
    def stat_mtime(self, path: PathLike) -> Optional[float]:
        """Modification time of *path* in seconds since the epoch, or ``None``."""

    @abstractmethod
    def stat_size(self, path: PathLike) -> Optional[int]:
        """Size of *path* in bytes, or ``None`` when it cannot be determined."""

    @abstractmethod
    def list_dir(self, path: PathLike) -> list[str]:
        """Names of the direct children of *path*, sorted. Missing directory -> ``[]``."""

    def read_text(self, path: PathLike) -> str:
        return self.read_bytes(path).decode("utf-8")

    def write_text(self, path: PathLike, text: str) -> None:
        self.write_bytes(path, text.encode("utf-8"))


class OsFileSystem(FileSystem):
    """The real filesystem."""

    def read_bytes(self, path: PathLike) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise FileSystemError(f"Cannot read {path}: {exc}", path=str(path)) from exc

    def write_bytes(self, path: PathLike, data: bytes) -> None:
        target = Path(path)
        try:
            _atomic_write(target, data)
        except OSError as exc:
            raise FileSystemError(f"Cannot write {target}: {exc}", path=str(target)) from exc

    def exists(self, path: PathLike) -> bool:
        return Path(path).exists()

    def is_file(self, path: PathLike) -> bool:
        return Path(path).is_file()

    def mkdir(self, path: PathLike) -> None:
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileSystemError(f"Cannot create directory {path}: {exc}", path=str(path)) from exc

    def remove(self, path: PathLike) -> None:
        try:
            Path(path).unlink()
        except OSError as exc:
            raise FileSystemError(f"Cannot remove {path}: {exc}", path=str(path)) from exc

    def stat_mtime(self, path: PathLike) -> Optional[float]:
        try:
            return Path(path).stat().st_mtime
        except OSError:
            return None

    def stat_size(self, path: PathLike) -> Optional[int]:
        try:
            return Path(path).stat().st_size
        except OSError:
            return None

    def list_dir(self, path: PathLike) -> list[str]:
        directory = Path(path)
        if not directory.is_dir():
            return []
        return sorted(child.name for child in directory.iterdir())


def _atomic_write(path: Path, data: bytes) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    On any failure the temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


class InMemoryFileSystem(FileSystem):
    """Dictionary-backed filesystem for tests.

    Paths are normalised to POSIX strings. Directories are implicit: a
    directory exists when :meth:`mkdir` created it or any file lives below it.
    Modification times come from a logical clock that advances on every
    write, so rewriting a file always changes its mtime; :meth:`set_mtime`
    overrides it.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self._dirs: set[str] = set()
        self._mtimes: dict[str, float] = {}
        self._tick = 1_700_000_000.0

    @staticmethod
    def _key(path: PathLike) -> str:
        return Path(path).as_posix()

    def _parents(self, key: str) -> list[str]:
        return [p.as_posix() for p in Path(key).parents]

    def read_bytes(self, path: PathLike) -> bytes:
        key = self._key(path)
        if key not in self.files:
            raise FileSystemError(f"Cannot read {key}: no such file", path=key)
        return self.files[key]

    def write_bytes(self, path: PathLike, data: bytes) -> None:
        key = self._key(path)
        self._dirs.update(self._parents(key))
        self.files[key] = bytes(data)
        self._tick += 1
        self._mtimes[key] = self._tick

    def exists(self, path: PathLike) -> bool:
        key = self._key(path)
        if key in self.files or key in self._dirs:
            return True
        prefix = key.rstrip("/") + "/"
        return any(f.startswith(prefix) for f in self.files)

    def is_file(self, path: PathLike) -> bool:
        return self._key(path) in self.files

    def mkdir(self, path: PathLike) -> None:
        key = self._key(path)
        self._dirs.add(key)
        self._dirs.update(self._parents(key))

    def remove(self, path: PathLike) -> None:
        key = self._key(path)
        if key not in self.files:
            raise FileSystemError(f"Cannot remove {key}: no such file", path=key)
        del self.files[key]
        self._mtimes.pop(key, None)

    def stat_mtime(self, path: PathLike) -> Optional[float]:
        return self._mtimes.get(self._key(path))

    def stat_size(self, path: PathLike) -> Optional[int]:
        data = self.files.get(self._key(path))
        return None if data is None else len(data)

    def list_dir(self, path: PathLike) -> list[str]:
        prefix = self._key(path).rstrip("/") + "/"
        names = set()
        for entry in list(self.files) + list(self._dirs):
            if entry.startswith(prefix):
                rest = entry[len(prefix):]
                if rest:
                    names.add(rest.split("/", 1)[0])
        return sorted(names)

    def set_mtime(self, path: PathLike, mtime: float) -> None:
        """Force the modification time of an existing file."""
        self._mtimes[self._key(path)] = mtime
