"""Pure helpers for merging local and remote collections.

Nothing here touches storage or the network; the sync engine and the
repository compose these functions.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..ids import is_local_id
from ..models import parse_timestamp

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

TOMBSTONES_KEY = "deleted_items"

Row = dict[str, Any]


def _updated(row: Row) -> datetime:
    return parse_timestamp(row.get("updated_at")) or _EPOCH


def resolve(local: Row, remote: Row) -> Row:
    """Last-writer-wins: return the record with the later ``updated_at``.

    Ties go to the remote copy so every device settles on the same row.
    """
    if _updated(local) > _updated(remote):
        return local
    return remote


def is_modified_since(row: Row, checkpoint: str | None) -> bool:
    """True if the row was written after the checkpoint (or never synced)."""
    if is_local_id(row.get("id")):
        return True
    since = parse_timestamp(checkpoint)
    if since is None:
        return True
    return _updated(row) > since


def merge_collection(
    local_rows: Iterable[Row],
    remote_rows: Iterable[Row],
    tombstones: set[str] | frozenset[str] = frozenset(),
) -> list[Row]:
    """Union local and remote rows keyed by id.

    For ids on both sides the later ``updated_at`` wins; a remote winner
    keeps local-only fields the server does not return. Tombstoned ids are
    dropped. Local order is kept, new remote rows are appended.
    """
    merged: dict[str, Row] = {}
    for row in local_rows:
        row_id = row.get("id")
        if row_id and row_id not in tombstones:
            merged[row_id] = row

    for row in remote_rows:
        row_id = row.get("id")
        if not row_id or row_id in tombstones:
            continue
        existing = merged.get(row_id)
        if existing is None:
            merged[row_id] = dict(row)
        elif resolve(existing, row) is row:
            merged[row_id] = {**existing, **row}

    return list(merged.values())


def drop_remotely_deleted(
    rows: Iterable[Row],
    previously_known: Iterable[str],
    remote_ids: set[str],
    checkpoint: str | None,
) -> tuple[list[Row], list[str]]:
    """Remove rows another writer deleted since the last pass.

    A row is considered deleted remotely when the previous pass saw it on
    the server, it is now absent there, and it has not been modified
    locally since the checkpoint.

    Returns:
        Tuple of (kept rows, dropped ids).
    """
    known = set(previously_known)
    kept: list[Row] = []
    dropped: list[str] = []
    for row in rows:
        row_id = row.get("id")
        if (
            row_id in known
            and row_id not in remote_ids
            and not is_modified_since(row, checkpoint)
        ):
            dropped.append(row_id)
            continue
        kept.append(row)
    return kept, dropped


def dedupe_by_key(rows: Iterable[Row], key: tuple[str, ...]) -> list[Row]:
    """Collapse rows sharing the same natural key, keeping the latest.

    Among equal timestamps a server id beats a temporary one, otherwise the
    first row seen is kept. Position follows the first occurrence. A winner
    still carrying a temporary id adopts the server id of a row it replaced,
    so the pair keeps the identity the server already knows.
    """
    winners: dict[tuple, Row] = {}
    for row in rows:
        natural = tuple(row.get(k) for k in key)
        current = winners.get(natural)
        if current is None:
            winners[natural] = row
            continue
        if _updated(row) > _updated(current) or (
            _updated(row) == _updated(current)
            and is_local_id(current.get("id"))
            and not is_local_id(row.get("id"))
        ):
            winner, loser = row, current
        else:
            winner, loser = current, row
        if is_local_id(winner.get("id")) and loser.get("id") and not is_local_id(loser["id"]):
            winner = {**winner, "id": loser["id"]}
        winners[natural] = winner
    return list(winners.values())


def dedupe_participant_sessions(rows: Iterable[Row]) -> list[Row]:
    return dedupe_by_key(rows, ("participant_id", "session_id"))


def filter_orphans(
    rows: Iterable[Row], parents: Mapping[str, set[str]]
) -> tuple[list[Row], list[Row]]:
    """Split rows into those whose foreign keys resolve and the orphans.

    Args:
        rows: Child rows.
        parents: Foreign-key field -> set of ids that exist.

    Returns:
        Tuple of (kept, orphans).
    """
    kept: list[Row] = []
    orphans: list[Row] = []
    for row in rows:
        if all(row.get(field) in ids for field, ids in parents.items()):
            kept.append(row)
        else:
            orphans.append(row)
    return kept, orphans


def eligible_for_upload(
    rows: Iterable[Row], remote_parents: Mapping[str, set[str]]
) -> tuple[list[Row], list[Row]]:
    """Referential-integrity filter applied right before a batch upload.

    A row is eligible only when every foreign key points at an id the
    remote store knows: downloaded this pass or uploaded earlier in it.
    Temporary ids never qualify.
    """
    known = {
        field: {i for i in ids if not is_local_id(i)}
        for field, ids in remote_parents.items()
    }
    return filter_orphans(rows, known)


# ==================== Tombstones ====================


def tombstone_set(tombstones: Mapping[str, list[str]] | None, collection: str) -> set[str]:
    return set((tombstones or {}).get(collection, []))


def add_tombstones(
    tombstones: Mapping[str, list[str]] | None,
    collection: str,
    ids: Iterable[str],
) -> dict[str, list[str]]:
    """Return a new tombstone map with ``ids`` recorded for ``collection``."""
    updated = {name: list(values) for name, values in (tombstones or {}).items()}
    current = updated.setdefault(collection, [])
    seen = set(current)
    for row_id in ids:
        if row_id and row_id not in seen:
            current.append(row_id)
            seen.add(row_id)
    return updated


def prune_tombstones(
    tombstones: Mapping[str, list[str]] | None,
    live: Mapping[str, set[str]],
) -> dict[str, list[str]]:
    """Keep only tombstones for ids the server still holds.

    Once the server has stopped returning an id there is no copy left that
    could resurrect it, so its tombstone can go.

    Args:
        tombstones: Collection name -> tombstoned ids.
        live: Collection name -> ids the server currently returns.
    """
    return {
        name: [row_id for row_id in ids if row_id in live.get(name, set())]
        for name, ids in (tombstones or {}).items()
    }
