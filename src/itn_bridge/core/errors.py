from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    MISSING_IDENTITY = "MissingIdentity"
    INVALID_PAYLOAD = "InvalidPayload"
    UNKNOWN_BIOME = "UnknownBiome"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    BACKEND_REJECTED = "BackendRejected"
    GATEWAY_REJECTED = "GatewayRejected"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.MISSING_IDENTITY: 400,
    ErrorKind.INVALID_PAYLOAD: 400,
    ErrorKind.UNKNOWN_BIOME: 404,
    ErrorKind.BACKEND_UNAVAILABLE: 500,
    ErrorKind.BACKEND_REJECTED: 500,
    ErrorKind.GATEWAY_REJECTED: 500,
}


class PipelineError(Exception):
    """A failure with a known place in the error taxonomy."""

    def __init__(self, kind: ErrorKind, message: str, detail: Any = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class VersionConflict(Exception):
    """The record changed between the snapshot read and the totals write."""

    def __init__(self, collection: str, record_id: int):
        super().__init__(f"{collection}/{record_id} was modified concurrently")
        self.collection = collection
        self.record_id = record_id
