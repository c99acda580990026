"""Content fingerprints for source documents.

The SHA-256 :func:`content_hash` of the exact source bytes is the
authoritative freshness signal. The file size is recorded alongside it so
the cache store can detect most edits without hashing: a differing size is
stale outright, an equal size is confirmed against the hash. The
modification time is kept for diagnostics only.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Optional, Union

from aperture.fs import FileSystem, OsFileSystem
from aperture.models import SpecFingerprint

__all__ = ["SpecFingerprint", "content_hash", "file_mtime", "fingerprint_bytes", "fingerprint_file"]


def content_hash(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def file_mtime(path: Union[str, Path], fs: Optional[FileSystem] = None) -> Optional[int]:
    """Best-effort modification time of *path* in whole seconds since the epoch.

    Any failure (missing file, unreadable metadata) yields ``None``.
    """
    fs = fs or OsFileSystem()
    mtime = fs.stat_mtime(path)
    if mtime is None or mtime < 0:
        return None
    return int(mtime)


def fingerprint_bytes(data: bytes, mtime: Optional[int] = None) -> SpecFingerprint:
    """Build a :class:`~aperture.models.SpecFingerprint` for in-memory *data*."""
    return SpecFingerprint(content_hash=content_hash(data), mtime_secs=mtime, file_size=len(data))


def fingerprint_file(path: Union[str, Path], fs: Optional[FileSystem] = None) -> SpecFingerprint:
    """Read *path* through *fs* and fingerprint it.

    Raises:
        FileSystemError: If the file cannot be read.
    """
    fs = fs or OsFileSystem()
    data = fs.read_bytes(path)
    return fingerprint_bytes(data, file_mtime(path, fs))
