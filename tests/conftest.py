"""Shared test fixtures for aperture.

Provides reusable fixtures for OpenAPI documents, compiled specs, isolated
config environments, in-memory filesystems and output state. These fixtures
are automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from aperture.fs import InMemoryFileSystem
from aperture.models import CachedSpec
from aperture.output import OutputManager, reset_output, set_output
from aperture.parser.compiler import compile_spec

PETSTORE_YAML = """\
openapi: 3.0.3
info:
  title: Petstore
  version: "1.0.0"
servers:
  - url: https://petstore.example.com/v1
components:
  securitySchemes:
    apiKeyAuth:
      type: apiKey
      in: header
      name: X-API-Key
      x-aperture-secret:
        source: env
        name: DEMO_KEY
    bearerAuth:
      type: http
      scheme: bearer
      x-aperture-secret:
        source: env
        name: PETSTORE_TOKEN
    oauth:
      type: oauth2
      flows:
        clientCredentials:
          tokenUrl: https://auth.example.com/token
          scopes: {}
  schemas:
    Pet:
      type: object
      properties:
        id:
          type: integer
        name:
          type: string
paths:
  /pets:
    get:
      operationId: listPets
      tags: [pets]
      parameters:
        - name: limit
          in: query
          schema:
            type: integer
        - name: status
          in: query
          schema:
            type: string
            enum: [available, sold]
        - name: X-Request-Source
          in: header
          schema:
            type: string
      responses:
        "200":
          description: ok
          content:
            application/json:
              schema:
                type: array
                items:
                  $ref: "#/components/schemas/Pet"
    post:
      operationId: createPet
      tags: [pets]
      requestBody:
        required: true
        content:
          application/json:
            schema:
              $ref: "#/components/schemas/Pet"
            example:
              name: Rex
      responses:
        "201":
          description: created
  /pets/{petId}:
    parameters:
      - name: petId
        in: path
        required: true
        schema:
          type: string
    get:
      operationId: getPet
      tags: [pets]
      security:
        - apiKeyAuth: []
      responses:
        "200":
          description: ok
    delete:
      operationId: deletePet
      tags: [pets]
      security:
        - bearerAuth: []
      parameters:
        - name: session
          in: cookie
          schema:
            type: string
      responses:
        "204":
          description: deleted
  /pets/{petId}/photo:
    put:
      operationId: uploadPhoto
      requestBody:
        content:
          multipart/form-data:
            schema:
              type: object
      responses:
        "200":
          description: ok
  /admin:
    get:
      operationId: adminStatus
      security:
        - oauth: []
      responses:
        "200":
          description: ok
"""

REGIONAL_YAML = """\
openapi: 3.1.0
info:
  title: Regional
  version: "2.0"
servers:
  - url: https://{region}.api.example.com/{version}
    variables:
      region:
        default: us
        enum: [us, eu, ap]
      version:
        default: v2
paths:
  /status:
    get:
      operationId: getStatus
      responses:
        "200":
          description: ok
"""


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Install a quiet, colourless OutputManager and reset it afterwards."""
    set_output(OutputManager(no_color=True, quiet=True))
    yield
    reset_output()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config root at a temporary directory.

    Clears the APERTURE_* environment variables and the secrets used by the
    fixture documents so that tests never see the developer's environment.

    Returns:
        The temporary config root.
    """
    config_dir = tmp_path / "aperture-config"
    monkeypatch.setenv("APERTURE_CONFIG_DIR", str(config_dir))
    for var in [
        "APERTURE_BASE_URL",
        "APERTURE_ENV",
        "APERTURE_CACHE_TTL",
        "APERTURE_CACHE_MAX_ENTRIES",
        "APERTURE_LOG_MAX_BODY",
        "DEMO_KEY",
        "PETSTORE_TOKEN",
    ]:
        monkeypatch.delenv(var, raising=False)
    return config_dir


# ---------------------------------------------------------------------------
# Documents and compiled specs
# ---------------------------------------------------------------------------


@pytest.fixture
def petstore_yaml() -> str:
    return PETSTORE_YAML


@pytest.fixture
def petstore_spec() -> CachedSpec:
    """The petstore document compiled under the name ``petstore``."""
    return compile_spec("petstore", PETSTORE_YAML)


@pytest.fixture
def regional_spec() -> CachedSpec:
    """A spec whose server URL is a template with ``region`` and ``version`` variables."""
    return compile_spec("regional", REGIONAL_YAML)


@pytest.fixture
def memfs() -> InMemoryFileSystem:
    return InMemoryFileSystem()
