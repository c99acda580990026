"""Tests for aperture.translate -- argument routing, server variables and base URLs."""

from __future__ import annotations

import json

import pytest

from aperture.exceptions import ServerVariableError, TranslationError
from aperture.models import ApiConfig, CachedSpec, GlobalConfig
from aperture.translate import (
    DEFAULT_BASE_URL,
    BaseUrlResolver,
    ServerVariableResolver,
    encode_server_variable,
    parse_custom_headers,
    translate,
)


# ---------------------------------------------------------------------------
# translate
# ---------------------------------------------------------------------------


class TestTranslate:
    def test_routes_by_location(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "deletePet", {"petId": "42", "session": "s1"})
        assert call.operation_id == "deletePet"
        assert call.path_params == {"petId": "42"}
        assert call.cookie_params == {"session": "s1"}
        assert call.query_params == {}
        assert call.body is None

    def test_query_and_header(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "listPets", {"limit": 10, "X-Request-Source": "cli"})
        assert call.query_params == {"limit": "10"}
        assert call.header_params == {"X-Request-Source": "cli"}

    def test_none_values_are_absent(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "listPets", {"limit": None})
        assert call.query_params == {}

    def test_value_rendering(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "listPets", {"limit": [1, 2, True]})
        assert call.query_params == {"limit": "1,2,true"}

    def test_unknown_operation(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError, match="Unknown operation 'nope'"):
            translate(petstore_spec, "nope")

    def test_skipped_operation_is_unknown(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError):
            translate(petstore_spec, "uploadPhoto", {"petId": "1"})

    def test_missing_required_parameter(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError) as exc_info:
            translate(petstore_spec, "getPet")
        exc = exc_info.value
        assert exc.details == {"operation_id": "getPet", "field": "petId"}
        assert "Missing required path parameter 'petId'" in exc.message

    def test_unknown_parameter(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError) as exc_info:
            translate(petstore_spec, "getPet", {"petId": "1", "verbose": "yes"})
        assert exc_info.value.details["field"] == "verbose"

    def test_enum_violation(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError, match="Allowed values: available, sold"):
            translate(petstore_spec, "listPets", {"status": "lost"})

    def test_enum_accepted(self, petstore_spec: CachedSpec) -> None:
        assert translate(petstore_spec, "listPets", {"status": "sold"}).query_params == {"status": "sold"}


class TestBody:
    def test_json_text_kept_verbatim(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "createPet", body='{"name": "Rex"}')
        assert call.body == '{"name": "Rex"}'

    def test_value_serialised(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "createPet", body={"name": "Rex", "id": 1})
        assert json.loads(call.body) == {"name": "Rex", "id": 1}

    def test_bytes_accepted(self, petstore_spec: CachedSpec) -> None:
        assert translate(petstore_spec, "createPet", body=b"[]").body == "[]"

    def test_invalid_json(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError, match="not valid JSON") as exc_info:
            translate(petstore_spec, "createPet", body="{name: Rex")
        assert exc_info.value.details["field"] == "body"

    def test_unserialisable_value(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError, match="not JSON-serialisable"):
            translate(petstore_spec, "createPet", body={"when": object()})

    def test_required_body_missing(self, petstore_spec: CachedSpec) -> None:
        with pytest.raises(TranslationError, match="requires a request body"):
            translate(petstore_spec, "createPet")


class TestCustomHeaders:
    def test_parsed(self) -> None:
        assert parse_custom_headers(["X-Trace: abc", "X-Empty:"]) == {"X-Trace": "abc", "X-Empty": ""}

    def test_value_may_contain_colon(self) -> None:
        assert parse_custom_headers(["X-Time: 12:30"]) == {"X-Time": "12:30"}

    @pytest.mark.parametrize("header", ["NoColon", ": value", "Bad Name: v", "X-Split: a\r\nInjected: b"])
    def test_invalid(self, header: str) -> None:
        with pytest.raises(TranslationError):
            parse_custom_headers([header])

    def test_passed_through_translate(self, petstore_spec: CachedSpec) -> None:
        call = translate(petstore_spec, "listPets", custom_headers=["X-Trace: 1"])
        assert call.custom_headers == {"X-Trace": "1"}


# ---------------------------------------------------------------------------
# Server variables
# ---------------------------------------------------------------------------


class TestServerVariables:
    def test_defaults(self, regional_spec: CachedSpec) -> None:
        resolver = ServerVariableResolver(regional_spec)
        assert resolver.resolve_variables() == {"region": "us", "version": "v2"}

    def test_override(self, regional_spec: CachedSpec) -> None:
        variables = ServerVariableResolver(regional_spec).resolve_variables(["region = eu"])
        assert variables["region"] == "eu"

    def test_enum_violation(self, regional_spec: CachedSpec) -> None:
        with pytest.raises(ServerVariableError, match="Allowed values: us, eu, ap"):
            ServerVariableResolver(regional_spec).resolve_variables(["region=mars"])

    def test_unknown_variable_lists_available(self, regional_spec: CachedSpec) -> None:
        with pytest.raises(ServerVariableError, match="Available variables: region, version"):
            ServerVariableResolver(regional_spec).resolve_variables(["zone=a"])

    @pytest.mark.parametrize("arg", ["region", "=eu", "region="])
    def test_malformed_assignment(self, regional_spec: CachedSpec, arg: str) -> None:
        with pytest.raises(ServerVariableError):
            ServerVariableResolver(regional_spec).resolve_variables([arg])

    def test_missing_value_without_default(self) -> None:
        spec = CachedSpec.model_validate(
            {
                "name": "t",
                "version": "1",
                "base_url": "https://{tenant}.example.com",
                "server_variables": {"tenant": {}},
            }
        )
        with pytest.raises(ServerVariableError, match="no default"):
            ServerVariableResolver(spec).resolve_variables()

    def test_substitute_encodes_values(self, regional_spec: CachedSpec) -> None:
        resolver = ServerVariableResolver(regional_spec)
        url = resolver.substitute_url("https://x/{path}", {"path": "a b/c"})
        assert url == "https://x/a%20b/c"

    def test_substitute_unresolved(self, regional_spec: CachedSpec) -> None:
        with pytest.raises(ServerVariableError, match="Unresolved variable 'tenant'"):
            ServerVariableResolver(regional_spec).substitute_url("https://{tenant}.x", {})

    @pytest.mark.parametrize("template", ["https://{}.x", "https://{1abc}.x", "https://{" + "a" * 65 + "}.x"])
    def test_invalid_template_names(self, regional_spec: CachedSpec, template: str) -> None:
        with pytest.raises(ServerVariableError):
            ServerVariableResolver(regional_spec).substitute_url(template, {})

    def test_encode_server_variable(self) -> None:
        assert encode_server_variable("v1/beta~x") == "v1/beta~x"
        assert encode_server_variable("a&b") == "a%26b"


# ---------------------------------------------------------------------------
# Base URL resolution
# ---------------------------------------------------------------------------


class TestBaseUrlResolver:
    def test_spec_server(self, petstore_spec: CachedSpec) -> None:
        assert BaseUrlResolver(petstore_spec).resolve() == "https://petstore.example.com/v1"

    def test_template_with_defaults(self, regional_spec: CachedSpec) -> None:
        assert BaseUrlResolver(regional_spec).resolve() == "https://us.api.example.com/v2"

    def test_template_with_assignment(self, regional_spec: CachedSpec) -> None:
        url = BaseUrlResolver(regional_spec).resolve(server_var_args=["region=eu"])
        assert url == "https://eu.api.example.com/v2"

    def test_explicit_wins(self, petstore_spec: CachedSpec, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APERTURE_BASE_URL", "https://env.example.com")
        assert BaseUrlResolver(petstore_spec).resolve("https://explicit.example.com/") == (
            "https://explicit.example.com"
        )

    def test_env_var_beats_config(self, petstore_spec: CachedSpec, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APERTURE_BASE_URL", "https://env.example.com")
        config = GlobalConfig(api_configs={"petstore": ApiConfig(base_url_override="https://cfg.example.com")})
        assert BaseUrlResolver(petstore_spec, config).resolve() == "https://env.example.com"

    def test_environment_url_beats_override(self, petstore_spec: CachedSpec) -> None:
        config = GlobalConfig(
            api_configs={
                "petstore": ApiConfig(
                    base_url_override="https://cfg.example.com",
                    environment_urls={"staging": "https://staging.example.com"},
                )
            }
        )
        assert BaseUrlResolver(petstore_spec, config, "staging").resolve() == "https://staging.example.com"
        assert BaseUrlResolver(petstore_spec, config, "prod").resolve() == "https://cfg.example.com"

    def test_environment_from_env_var(self, petstore_spec: CachedSpec, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APERTURE_ENV", "staging")
        config = GlobalConfig(
            api_configs={"petstore": ApiConfig(environment_urls={"staging": "https://staging.example.com"})}
        )
        assert BaseUrlResolver(petstore_spec, config).resolve() == "https://staging.example.com"

    def test_default_when_no_server(self) -> None:
        spec = CachedSpec(name="bare", version="1")
        assert BaseUrlResolver(spec).resolve() == DEFAULT_BASE_URL

    def test_template_errors_propagate(self, regional_spec: CachedSpec) -> None:
        with pytest.raises(ServerVariableError):
            BaseUrlResolver(regional_spec).resolve(server_var_args=["region=mars"])
