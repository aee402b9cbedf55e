"""Error taxonomy for the cluster registry.

Every error raised by the registry carries a ``code`` so outer layers (CLI,
HTTP API) can translate it without inspecting messages.
"""


class RegistryError(Exception):
    """Base class for registry errors."""

    code = "Unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(RegistryError):
    """Malformed input: bad URI, bad config JSON, reserved annotation, missing field."""

    code = "InvalidArgument"


class NotFound(RegistryError):
    code = "NotFound"


class AlreadyExists(RegistryError):
    code = "AlreadyExists"


class PreconditionFailed(RegistryError):
    """The operation is not allowed in the current configuration."""

    code = "FailedPrecondition"


class Conflict(RegistryError):
    """The backend rejected a write because the record changed underneath it.

    Retryable by the caller after re-reading the record.
    """

    code = "Conflict"


def cluster_not_found(server: str) -> NotFound:
    return NotFound(f'cluster "{server}" not found')
