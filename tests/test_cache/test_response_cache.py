"""Tests for the diskcache-backed response cache."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from aperture.cache.response_cache import ResponseCache, apply_env_overrides, make_cache_key
from aperture.exceptions import ConfigError
from aperture.invocation import OperationCall
from aperture.models import HTTPMethod, ResponseCacheConfig


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path: Path, clock: FakeClock) -> Iterator[ResponseCache]:
    rc = ResponseCache(tmp_path, ResponseCacheConfig(ttl_seconds=60, max_entries=3), clock=clock)
    yield rc
    rc.close()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestCacheKey:
    def test_deterministic_and_order_independent(self) -> None:
        a = OperationCall(operation_id="listPets", query_params={"limit": "5", "status": "sold"})
        b = OperationCall(operation_id="listPets", query_params={"status": "sold", "limit": "5"})
        assert make_cache_key("petstore", a) == make_cache_key("petstore", b)
        assert len(make_cache_key("petstore", a)) == 64

    def test_body_whitespace_ignored(self) -> None:
        a = OperationCall(operation_id="createPet", body='{"name":"Rex"}')
        b = OperationCall(operation_id="createPet", body='{ "name": "Rex" }')
        assert make_cache_key("petstore", a) == make_cache_key("petstore", b)

    @pytest.mark.parametrize(
        "other",
        [
            OperationCall(operation_id="listPets", query_params={"limit": "6"}),
            OperationCall(operation_id="listPets", query_params={"limit": "5"}, header_params={"X-A": "1"}),
            OperationCall(operation_id="getPet", query_params={"limit": "5"}),
        ],
    )
    def test_differs_by_arguments(self, other: OperationCall) -> None:
        base = OperationCall(operation_id="listPets", query_params={"limit": "5"})
        assert make_cache_key("petstore", base) != make_cache_key("petstore", other)

    def test_differs_by_api_key_and_base_url(self) -> None:
        call = OperationCall(operation_id="listPets")
        keys = {
            make_cache_key("petstore", call),
            make_cache_key("other", call),
            make_cache_key("petstore", call, idempotency_key="k1"),
            make_cache_key("petstore", call, base_url="https://staging.example.com"),
        }
        assert len(keys) == 4

    def test_credential_headers_excluded(self) -> None:
        plain = OperationCall(operation_id="listPets")
        with_auth = OperationCall(operation_id="listPets", custom_headers={"Authorization": "Bearer x"})
        assert make_cache_key("petstore", plain) == make_cache_key("petstore", with_auth)


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


class TestEligibility:
    def test_safe_methods(self, cache: ResponseCache) -> None:
        assert cache.is_eligible(HTTPMethod.GET)
        assert cache.is_eligible("HEAD")

    def test_mutating_excluded_by_default(self, cache: ResponseCache) -> None:
        assert not cache.is_eligible(HTTPMethod.PUT)
        assert not cache.is_eligible(HTTPMethod.POST, idempotency_key="k1")

    def test_cache_mutating(self, tmp_path: Path) -> None:
        rc = ResponseCache(tmp_path, ResponseCacheConfig(cache_mutating=True))
        try:
            assert rc.is_eligible(HTTPMethod.DELETE)
            assert rc.is_eligible(HTTPMethod.POST, idempotency_key="k1")
            assert not rc.is_eligible(HTTPMethod.POST)
        finally:
            rc.close()

    def test_explicit_methods_list(self, tmp_path: Path) -> None:
        rc = ResponseCache(tmp_path, ResponseCacheConfig(methods=[HTTPMethod.POST]))
        try:
            assert not rc.is_eligible(HTTPMethod.GET)
            assert rc.is_eligible(HTTPMethod.POST, idempotency_key="k1")
            assert not rc.is_eligible(HTTPMethod.POST)
        finally:
            rc.close()

    def test_authenticated_requests(self, cache: ResponseCache, tmp_path: Path) -> None:
        assert not cache.is_eligible(HTTPMethod.GET, authenticated=True)
        rc = ResponseCache(tmp_path / "auth", ResponseCacheConfig(allow_authenticated=True))
        try:
            assert rc.is_eligible(HTTPMethod.GET, authenticated=True)
        finally:
            rc.close()

    def test_disabled(self, tmp_path: Path) -> None:
        rc = ResponseCache(tmp_path, ResponseCacheConfig(enabled=False))
        assert not rc.is_eligible(HTTPMethod.GET)
        assert rc.stats() == {"enabled": False}
        assert not (tmp_path / "responses").exists()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestStorage:
    @pytest.mark.asyncio
    async def test_set_and_get(self, cache: ResponseCache) -> None:
        assert await cache.set("k", 200, {"content-type": "application/json"}, "[]", api_name="petstore")
        entry = await cache.get("k")
        assert entry is not None
        assert entry["status"] == 200
        assert entry["body"] == "[]"
        assert entry["headers"] == {"content-type": "application/json"}

    @pytest.mark.asyncio
    async def test_miss(self, cache: ResponseCache) -> None:
        assert await cache.get("absent") is None

    @pytest.mark.asyncio
    async def test_only_2xx_stored(self, cache: ResponseCache) -> None:
        assert not await cache.set("k", 404, {}, "missing")
        assert not await cache.set("k", 503, {}, "down")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cache: ResponseCache, clock: FakeClock) -> None:
        await cache.set("k", 200, {}, "x")
        clock.now += 59
        assert await cache.get("k") is not None
        clock.now += 1
        assert await cache.get("k") is None
        assert cache.stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_zero_ttl_stores_nothing(self, tmp_path: Path) -> None:
        rc = ResponseCache(tmp_path, ResponseCacheConfig(ttl_seconds=0))
        try:
            assert not await rc.set("k", 200, {}, "x")
            assert await rc.get("k") is None
        finally:
            rc.close()

    @pytest.mark.asyncio
    async def test_oldest_evicted_past_max_entries(self, cache: ResponseCache) -> None:
        for key in ("a", "b", "c", "d"):
            await cache.set(key, 200, {}, key)
        assert cache.stats()["size"] == 3
        assert await cache.get("a") is None
        assert (await cache.get("d"))["body"] == "d"

    @pytest.mark.asyncio
    async def test_clear_api(self, cache: ResponseCache) -> None:
        await cache.set("p1", 200, {}, "1", api_name="petstore")
        await cache.set("o1", 200, {}, "2", api_name="other")
        assert cache.clear_api("petstore") == 1
        assert await cache.get("p1") is None
        assert await cache.get("o1") is not None

    @pytest.mark.asyncio
    async def test_invalidate_and_clear(self, cache: ResponseCache) -> None:
        await cache.set("a", 200, {}, "1")
        await cache.set("b", 200, {}, "2")
        cache.invalidate("a")
        assert await cache.get("a") is None
        assert cache.clear() == 1

    def test_stats(self, cache: ResponseCache, tmp_path: Path) -> None:
        stats = cache.stats()
        assert stats["enabled"] is True
        assert stats["size"] == 0
        assert stats["directory"] == str(tmp_path / "responses")
        assert stats["ttl_seconds"] == 60

    def test_default_directory(self, isolated_config: Path) -> None:
        rc = ResponseCache(config=ResponseCacheConfig(enabled=False))
        assert rc.directory == isolated_config / ".cache" / "responses"


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


class TestEnvOverrides:
    def test_unset_returns_same_config(self) -> None:
        config = ResponseCacheConfig()
        assert apply_env_overrides(config) is config

    def test_applied(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APERTURE_CACHE_TTL", "0")
        monkeypatch.setenv("APERTURE_CACHE_MAX_ENTRIES", "10")
        config = apply_env_overrides(ResponseCacheConfig())
        assert config.ttl_seconds == 0
        assert config.max_entries == 10

    @pytest.mark.parametrize(
        ("name", "value"),
        [("APERTURE_CACHE_TTL", "soon"), ("APERTURE_CACHE_TTL", "-1"), ("APERTURE_CACHE_MAX_ENTRIES", "0")],
    )
    def test_invalid(self, monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError):
            apply_env_overrides(ResponseCacheConfig())
