"""Caching layers of aperture.

* :class:`CacheStore` -- compiled specs on disk, fingerprinted against their
  source documents and recompiled transparently when stale.
* :class:`ResponseCache` -- successful invocation responses, stored with a
  TTL using :mod:`diskcache`.
"""

from aperture.cache.fingerprint import content_hash, fingerprint_bytes, fingerprint_file
from aperture.cache.response_cache import ResponseCache, apply_env_overrides, make_cache_key
from aperture.cache.store import CacheStore, load, validate_api_name

__all__ = [
    "CacheStore",
    "ResponseCache",
    "apply_env_overrides",
    "content_hash",
    "fingerprint_bytes",
    "fingerprint_file",
    "load",
    "make_cache_key",
    "validate_api_name",
]
