"""Entity records and per-collection metadata."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .ids import is_local_id


class Collection(Enum):
    """Entity collections, in parent-before-child order.

    The value doubles as the remote table name and the Local Store key
    suffix.
    """

    CLUBS = "clubs"
    SESSIONS = "sessions"
    PARTICIPANTS = "participants"
    PARTICIPANT_SESSIONS = "participant_sessions"
    ATTENDANCE = "attendance"

    @property
    def foreign_keys(self) -> dict[str, "Collection"]:
        return FOREIGN_KEYS[self]

    @property
    def id_fields(self) -> tuple[str, ...]:
        """Fields holding entity ids (own id first)."""
        return ("id", *FOREIGN_KEYS[self])

    @property
    def remote_columns(self) -> tuple[str, ...]:
        return REMOTE_COLUMNS[self]

    @property
    def natural_key(self) -> tuple[str, ...] | None:
        return NATURAL_KEYS.get(self)


FOREIGN_KEYS: dict[Collection, dict[str, Collection]] = {
    Collection.CLUBS: {},
    Collection.SESSIONS: {"club_id": Collection.CLUBS},
    Collection.PARTICIPANTS: {"club_id": Collection.CLUBS},
    Collection.PARTICIPANT_SESSIONS: {
        "participant_id": Collection.PARTICIPANTS,
        "session_id": Collection.SESSIONS,
    },
    Collection.ATTENDANCE: {
        "session_id": Collection.SESSIONS,
        "participant_id": Collection.PARTICIPANTS,
    },
}

# Columns the remote tables accept; anything else is local presentation state
REMOTE_COLUMNS: dict[Collection, tuple[str, ...]] = {
    Collection.CLUBS: (
        "id", "name", "description", "owner_id", "stats_reset_date", "updated_at",
    ),
    Collection.SESSIONS: (
        "id", "club_id", "day_of_week", "start_time", "end_time", "updated_at",
    ),
    Collection.PARTICIPANTS: (
        "id", "club_id", "first_name", "last_name", "is_long_term_sick", "updated_at",
    ),
    Collection.PARTICIPANT_SESSIONS: ("participant_id", "session_id", "updated_at"),
    Collection.ATTENDANCE: (
        "session_id", "participant_id", "date", "status", "updated_at",
    ),
}

NATURAL_KEYS: dict[Collection, tuple[str, ...]] = {
    Collection.PARTICIPANT_SESSIONS: ("participant_id", "session_id"),
    Collection.ATTENDANCE: ("session_id", "participant_id", "date"),
}


def remote_payload(collection: Collection, row: dict[str, Any]) -> dict[str, Any]:
    """Shape a stored row for upload.

    Keeps only the remote table's columns. The id is left out for rows the
    server must create (temporary ids) and for join rows, which are matched
    on their natural key instead.
    """
    payload = {k: row[k] for k in collection.remote_columns if k in row}
    if "id" in payload and (
        payload["id"] is None or is_local_id(payload["id"]) or collection.natural_key
    ):
        del payload["id"]
    return payload


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Record:
    """Shared dict conversion for entity dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Club(_Record):
    name: str
    description: str = ""
    id: str | None = None
    owner_id: str | None = None
    share_code: str | None = None
    stats_reset_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_unclaimed(self) -> bool:
        """Created offline and never claimed by a signed-in user."""
        return not self.owner_id


@dataclass
class Session(_Record):
    club_id: str
    day_of_week: str
    start_time: str
    end_time: str
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Participant(_Record):
    club_id: str
    first_name: str
    last_name: str
    id: str | None = None
    is_long_term_sick: bool = False
    preferred_session_ids: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ParticipantSession(_Record):
    participant_id: str
    session_id: str
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class AttendanceRecord(_Record):
    session_id: str
    participant_id: str
    date: str
    status: str = "present"  # "present" or "absent"
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def present(self) -> bool:
        return self.status == "present"
