"""Numeric process exit codes for every failure category of the engine.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~aperture.exceptions.ApertureError` subclass.
Front-ends (the CLI surface, batch runners, shell wrappers) can inspect the
exit code to determine the failure class without parsing stderr.

Example::

    $ aperture api demo get-user --id 42
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- no security requirement could be satisfied
"""

EXIT_SUCCESS = 0
"""The invocation completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred (configuration, filesystem)."""

EXIT_INVALID_USAGE = 2
"""The invocation named an unknown operation or had missing/unknown parameters."""

EXIT_AUTH_FAILURE = 3
"""No security requirement of the command could be satisfied."""

EXIT_HTTP_ERROR = 4
"""The API answered with a terminal non-2xx status."""

EXIT_SERVER_ERROR = 5
"""The API kept answering with retryable 5xx/429 statuses until retries ran out."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (DNS failure, connection refused, reset)."""

EXIT_SPEC_PARSE_ERROR = 7
"""The OpenAPI document could not be parsed or uses an unsupported construct."""

EXIT_CACHE_ERROR = 8
"""The compiled cache is missing, corrupted, stale or from another format version."""

EXIT_TIMEOUT = 9
"""The overall deadline of the invocation expired."""
