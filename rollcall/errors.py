"""Error taxonomy for local storage and remote synchronization."""

from dataclasses import dataclass
from enum import Enum


class StorageError(Exception):
    """Raised when the Local Store cannot be read or written."""


class SyncErrorKind(Enum):
    """Category of a failed remote or sync operation."""

    NETWORK = "network"  # Unreachable, timeout, 5xx
    AUTH = "auth"  # Missing or expired session
    CONSTRAINT = "constraint"  # Remote constraint violation
    PROTOCOL = "protocol"  # Unexpected response
    FORBIDDEN = "forbidden"  # Caller does not own the record
    INTEGRITY = "integrity"  # Dangling foreign key
    STORAGE = "storage"  # Local Store failure


class ErrorPolicy(Enum):
    """What the engine does with an error of a given kind."""

    RETRY_NEXT_PASS = "retry_next_pass"
    DROP_RECORD = "drop_record"
    SURFACE = "surface"


ERROR_POLICY: dict[SyncErrorKind, ErrorPolicy] = {
    SyncErrorKind.NETWORK: ErrorPolicy.RETRY_NEXT_PASS,
    SyncErrorKind.AUTH: ErrorPolicy.RETRY_NEXT_PASS,
    SyncErrorKind.CONSTRAINT: ErrorPolicy.RETRY_NEXT_PASS,
    SyncErrorKind.PROTOCOL: ErrorPolicy.RETRY_NEXT_PASS,
    SyncErrorKind.FORBIDDEN: ErrorPolicy.DROP_RECORD,
    SyncErrorKind.INTEGRITY: ErrorPolicy.DROP_RECORD,
    SyncErrorKind.STORAGE: ErrorPolicy.SURFACE,
}


@dataclass
class SyncError:
    """Typed outcome of a failed remote call or sync step."""

    kind: SyncErrorKind
    message: str
    status_code: int | None = None
    code: str | None = None  # PostgREST / Postgres error code

    @property
    def policy(self) -> ErrorPolicy:
        return ERROR_POLICY[self.kind]

    def __str__(self) -> str:
        prefix = f"{self.kind.value}"
        if self.status_code is not None:
            prefix += f" {self.status_code}"
        return f"{prefix}: {self.message}"
