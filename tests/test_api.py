"""End-to-end tests of the top-level aperture API."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

import aperture
from aperture.auth.credentials import MappingCredentials
from aperture.cache.store import CacheStore
from aperture.invocation import ExecutionContext, ResultKind
from aperture.models import RetryPolicy


class TestTopLevel:
    def test_exports(self) -> None:
        assert set(aperture.__all__) == {"compile", "execute", "load", "translate"}
        assert aperture.__version__

    @pytest.mark.asyncio
    async def test_register_load_translate_execute(self, tmp_path: Path, petstore_yaml: str) -> None:
        CacheStore(tmp_path).add_spec("petstore", petstore_yaml)
        spec = aperture.load(tmp_path, "petstore")

        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if len(seen) == 1:
                return httpx.Response(502)
            return httpx.Response(200, json={"id": "7", "name": "Rex"})

        call = aperture.translate(spec, "getPet", {"petId": "7"})
        result = await aperture.execute(
            spec,
            call,
            ExecutionContext(retry_policy=RetryPolicy(initial_delay=0, jitter=False)),
            credentials=MappingCredentials({"DEMO_KEY": "abc"}),
            transport=httpx.MockTransport(handler),
        )

        assert result.kind is ResultKind.SUCCESS
        assert result.json()["name"] == "Rex"
        assert result.attempts == 2
        assert [str(r.url) for r in seen] == ["https://petstore.example.com/v1/pets/7"] * 2
        assert all(r.headers["X-API-Key"] == "abc" for r in seen)

    def test_compile_is_pure(self, petstore_yaml: str) -> None:
        assert aperture.compile("petstore", petstore_yaml) == aperture.compile("petstore", petstore_yaml)
