"""aperture -- compile OpenAPI 3.x documents into cached command models and execute them.

An API is registered once: its document is compiled into a versioned
:class:`~aperture.models.CachedSpec` and stored next to a fingerprint of the
source. Every later invocation loads the compiled form, translates the
caller's arguments, resolves credentials from environment variables named by
``x-aperture-secret`` and executes the request asynchronously.

Typical workflow::

    import aperture

    spec = aperture.compile("petstore", document_bytes)
    call = aperture.translate(spec, "getPetById", {"petId": "7"})
    result = await aperture.execute(spec, call)

Modules:
    models: Pydantic models shared across the entire package.
    parser: Document loading, ``$ref`` resolution and compilation.
    cache: Compiled-spec store and response cache.
    auth: Security scheme resolution.
    translate: Argument translation and base URL resolution.
    engine: Asynchronous execution with retry.
    config: Configuration root, global config and environment overrides.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes.
    output: stderr diagnostics and redaction helpers.
"""

from aperture.cache.store import load
from aperture.engine.executor import execute
from aperture.parser.compiler import compile_spec as compile
from aperture.translate import translate

__version__ = "0.1.0"

__all__ = ["compile", "execute", "load", "translate"]
