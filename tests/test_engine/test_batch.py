"""Tests for aperture.engine.batch -- bounded concurrent execution."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from aperture.auth.credentials import MappingCredentials
from aperture.engine.batch import execute_batch
from aperture.exceptions import AuthResolutionError, HttpStatusError
from aperture.invocation import ExecutionContext, ExecutionResult, ResultKind
from aperture.models import CachedSpec, ResponseCacheConfig
from aperture.translate import translate


class ConcurrencyProbe:
    """Async MockTransport handler that tracks how many requests are in flight."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.peak = 0
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        pet_id = request.url.path.rsplit("/", 1)[-1]
        if pet_id == "missing":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"id": pet_id})


class TestExecuteBatch:
    @pytest.mark.asyncio
    async def test_results_in_input_order(self, petstore_spec: CachedSpec) -> None:
        probe = ConcurrencyProbe()
        calls = [translate(petstore_spec, "getPet", {"petId": str(i)}) for i in range(6)]

        outcomes = await execute_batch(
            petstore_spec,
            calls,
            concurrency=2,
            credentials=MappingCredentials({"DEMO_KEY": "abc"}),
            transport=httpx.MockTransport(probe),
        )

        assert [o.json()["id"] for o in outcomes] == [str(i) for i in range(6)]
        assert all(isinstance(o, ExecutionResult) and o.kind is ResultKind.SUCCESS for o in outcomes)
        assert probe.peak <= 2
        assert len(probe.requests) == 6

    @pytest.mark.asyncio
    async def test_errors_returned_in_place(self, petstore_spec: CachedSpec) -> None:
        probe = ConcurrencyProbe()
        calls = [
            translate(petstore_spec, "getPet", {"petId": "1"}),
            translate(petstore_spec, "getPet", {"petId": "missing"}),
            translate(petstore_spec, "getPet", {"petId": "3"}),
        ]
        outcomes = await execute_batch(
            petstore_spec,
            calls,
            credentials=MappingCredentials({"DEMO_KEY": "abc"}),
            transport=httpx.MockTransport(probe),
        )
        assert outcomes[0].status == 200
        assert isinstance(outcomes[1], HttpStatusError)
        assert outcomes[1].status == 404
        assert outcomes[2].status == 200

    @pytest.mark.asyncio
    async def test_auth_failures_do_not_dispatch(self, petstore_spec: CachedSpec) -> None:
        probe = ConcurrencyProbe()
        calls = [translate(petstore_spec, "getPet", {"petId": "1"}), translate(petstore_spec, "listPets")]
        outcomes = await execute_batch(
            petstore_spec,
            calls,
            credentials=MappingCredentials(),
            transport=httpx.MockTransport(probe),
        )
        assert isinstance(outcomes[0], AuthResolutionError)
        assert isinstance(outcomes[1], ExecutionResult)
        assert [r.url.path for r in probe.requests] == ["/v1/pets"]

    @pytest.mark.asyncio
    async def test_per_call_contexts(self, petstore_spec: CachedSpec) -> None:
        probe = ConcurrencyProbe()
        calls = [
            (translate(petstore_spec, "createPet", body={"name": "a"}), ExecutionContext(idempotency_key="k-a")),
            (translate(petstore_spec, "createPet", body={"name": "b"}), ExecutionContext(idempotency_key="k-b")),
        ]
        await execute_batch(petstore_spec, calls, transport=httpx.MockTransport(probe))
        keys = sorted(r.headers["Idempotency-Key"] for r in probe.requests)
        assert keys == ["k-a", "k-b"]

    @pytest.mark.asyncio
    async def test_shared_cache_from_context(self, petstore_spec: CachedSpec) -> None:
        probe = ConcurrencyProbe()
        call = translate(petstore_spec, "listPets")
        context = ExecutionContext(cache_config=ResponseCacheConfig(ttl_seconds=60))
        await execute_batch(petstore_spec, [call], context, transport=httpx.MockTransport(probe))
        outcomes = await execute_batch(petstore_spec, [call], context, transport=httpx.MockTransport(probe))
        assert outcomes[0].kind is ResultKind.CACHED
        assert len(probe.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self, petstore_spec: CachedSpec) -> None:
        assert await execute_batch(petstore_spec, []) == []

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(ValueError, match="concurrency"):
            await execute_batch(petstore_spec, [], concurrency=0)
