"""Entity identifiers.

Records created on this device get a temporary local id until the remote
store assigns a permanent one. Ids are persisted as plain strings; in code
they are parsed into ``LocalId`` or ``RemoteId`` so promotion logic can
branch on the type instead of on string prefixes.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

LOCAL_PREFIX = "local-"


@dataclass(frozen=True)
class LocalId:
    """Temporary client-generated identifier."""

    token: str

    def __str__(self) -> str:
        return f"{LOCAL_PREFIX}{self.token}"


@dataclass(frozen=True)
class RemoteId:
    """Permanent identifier issued by the remote store."""

    value: str

    def __str__(self) -> str:
        return self.value


EntityId = LocalId | RemoteId


def parse_id(raw: str) -> EntityId:
    """Parse a stored id string into its tagged form."""
    if raw.startswith(LOCAL_PREFIX):
        return LocalId(raw[len(LOCAL_PREFIX):])
    return RemoteId(raw)


def new_local_id() -> LocalId:
    """Generate a fresh temporary id."""
    return LocalId(f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}")


def is_local_id(raw: str | None) -> bool:
    """Return True if ``raw`` is a temporary id (never uploaded)."""
    if not raw:
        return False
    return isinstance(parse_id(raw), LocalId)


def promote_record(
    record: dict[str, Any],
    id_map: Mapping[str, str],
    fields: Iterable[str],
) -> dict[str, Any]:
    """Rewrite temporary ids in ``record`` using ``id_map``.

    Only the listed fields are touched and only values that parse as
    ``LocalId`` and appear in the map are replaced. Returns a new dict; the
    input is left unchanged.

    Args:
        record: Stored record.
        id_map: Temporary id string -> server id string.
        fields: Names of the id and foreign-key fields of the record.

    Returns:
        The record with promoted ids.
    """
    promoted = dict(record)
    for name in fields:
        value = promoted.get(name)
        if not isinstance(value, str):
            continue
        if isinstance(parse_id(value), LocalId) and value in id_map:
            promoted[name] = id_map[value]
    return promoted
