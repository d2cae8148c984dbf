"""Sync engine reconciling the Local Store with the shared backend.

One pass downloads what the user can see, merges it into the Local Store,
uploads pending local changes in per-collection batches and finally
rewrites temporary ids with the ones the server issued. Passes are
idempotent: re-running one after a crash or a dropped connection converges
to the same state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from ..errors import ErrorPolicy, SyncError, SyncErrorKind
from ..ids import is_local_id, promote_record
from ..models import Collection, parse_timestamp, remote_payload, utc_now_iso
from ..remote import AuthSession
from .merge import (
    TOMBSTONES_KEY,
    dedupe_by_key,
    drop_remotely_deleted,
    eligible_for_upload,
    filter_orphans,
    is_modified_since,
    merge_collection,
    prune_tombstones,
    tombstone_set,
)

if TYPE_CHECKING:
    from ..repository import EntityRepository

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_timestamp"
KNOWN_REMOTE_KEY = "known_remote_ids"
PENDING_ID_MAP_KEY = "pending_id_map"

Row = dict[str, Any]


class SyncPhase(Enum):
    """Where a pass currently is."""

    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    UPLOADING = "uploading"
    RECONCILING_IDS = "reconciling_ids"
    ERROR = "error"


class SyncStatus(Enum):
    """Status of a sync pass."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable
    SKIPPED = "skipped"  # Pass in flight, debounced or signed out


@dataclass
class SyncResult:
    """Result of a sync pass."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    entries_deleted: int = 0
    entries_dropped: int = 0
    error: SyncError | None = None
    phase: SyncPhase | None = None
    timestamp: datetime | None = None


@dataclass
class SyncState:
    """Snapshot sent to status listeners."""

    is_syncing: bool
    phase: SyncPhase
    last_sync: datetime | None
    error: str | None = None


@dataclass
class _RemoteSnapshot:
    """Rows downloaded during a pass."""

    rows: dict[Collection, list[Row]]
    owned_club_ids: set[str] = field(default_factory=set)

    def ids(self, collection: Collection) -> set[str]:
        return {r["id"] for r in self.rows.get(collection, []) if r.get("id")}

    def by_id(self, collection: Collection) -> dict[str, Row]:
        return {r["id"]: r for r in self.rows.get(collection, []) if r.get("id")}


class _PassAborted(Exception):
    def __init__(self, error: SyncError):
        super().__init__(str(error))
        self.error = error


class SyncEngine:
    """Coordinator for offline-first synchronization.

    Owns the in-flight flag, the checkpoint and the listeners. Construct
    one per process and share it with whatever triggers syncs (timer,
    foreground hook, user action).
    """

    def __init__(
        self,
        repository: "EntityRepository",
        min_interval_seconds: float = 5.0,
    ):
        """Initialize the sync engine.

        Args:
            repository: Repository whose Local Store and remote are synced.
            min_interval_seconds: Minimum spacing between passes.
        """
        self.repository = repository
        self.store = repository.store
        self.min_interval_seconds = min_interval_seconds
        self._syncing = False
        self._phase = SyncPhase.IDLE
        self._last_attempt: float | None = None
        self._consecutive_failures = 0
        self._last_error: SyncError | None = None
        self._listeners: list[Callable[[SyncState], None]] = []
        self._auto_task: asyncio.Task | None = None
        self._auto_stop: asyncio.Event | None = None

    @property
    def remote(self):
        return self.repository.remote

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def last_sync(self) -> datetime | None:
        """Timestamp of the last successful pass."""
        return parse_timestamp(self.store.get(LAST_SYNC_KEY))

    # ==================== Listeners ====================

    def on_status_change(self, callback: Callable[[SyncState], None]) -> Callable[[], None]:
        """Subscribe to state changes.

        Returns:
            Function that unsubscribes the callback.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        state = SyncState(
            is_syncing=self._syncing,
            phase=self._phase,
            last_sync=self.last_sync,
            error=str(self._last_error) if self._last_error else None,
        )
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Sync listener failed: {e}")

    def _set_phase(self, phase: SyncPhase) -> None:
        self._phase = phase
        logger.debug(f"Sync phase: {phase.value}")
        self._notify()

    # ==================== Pass ====================

    async def sync_now(self, force: bool = False) -> SyncResult:
        """Run one full pass unless one is already in flight.

        Args:
            force: Ignore the minimum spacing between passes.

        Returns:
            SyncResult describing the pass.
        """
        if self._syncing:
            logger.info("Sync already in progress, skipping")
            return SyncResult(status=SyncStatus.SKIPPED, phase=self._phase)

        now = time.monotonic()
        if (
            not force
            and self._last_attempt is not None
            and now - self._last_attempt < self.min_interval_seconds
        ):
            logger.debug("Sync called too soon after last sync, skipping")
            return SyncResult(status=SyncStatus.SKIPPED, phase=self._phase)

        self._syncing = True
        self._last_attempt = now
        self.repository.hold_remote = True
        self._set_phase(SyncPhase.ACQUIRING_LOCK)
        try:
            # Repository writes already on the wire land before the pass reads local state
            await self.repository.wait_for_remote_calls()
            result = await self._run_pass()
        finally:
            self._syncing = False
            self.repository.hold_remote = False
            self._phase = SyncPhase.IDLE
            self._notify()

        logger.info(
            f"Sync: {result.status.value}, pushed={result.entries_pushed}, "
            f"pulled={result.entries_pulled}, deleted={result.entries_deleted}, "
            f"dropped={result.entries_dropped}"
        )
        return result

    async def _run_pass(self) -> SyncResult:
        if self.remote is None:
            return SyncResult(
                status=SyncStatus.OFFLINE,
                error=SyncError(SyncErrorKind.NETWORK, "No remote configured"),
            )

        session = await self.repository.current_session()
        if session is None:
            logger.info("Not authenticated, skipping sync")
            return SyncResult(
                status=SyncStatus.SKIPPED,
                error=SyncError(SyncErrorKind.AUTH, "Not authenticated"),
            )

        started = utc_now_iso()
        checkpoint = self.store.get(LAST_SYNC_KEY)

        # Ids issued during a pass that did not finish
        leftover = self.store.get(PENDING_ID_MAP_KEY) or {}
        if leftover:
            logger.info(f"Applying {len(leftover)} ids from an interrupted pass")
            self.repository.apply_id_map(leftover)
            self.store.remove(PENDING_ID_MAP_KEY)

        result = SyncResult(status=SyncStatus.SUCCESS)
        remote: _RemoteSnapshot | None = None
        returned: dict[Collection, list[Row]] = {}
        sent: dict[Collection, dict[str, str | None]] = {}
        deleted: dict[Collection, set[str]] = {}

        try:
            self._set_phase(SyncPhase.DOWNLOADING)
            remote = await self._download(session)

            self._set_phase(SyncPhase.MERGING)
            result.entries_pulled = self._merge(remote, checkpoint)

            self._set_phase(SyncPhase.UPLOADING)
            await self._upload(session, remote, checkpoint, result, returned, sent, deleted)
        except _PassAborted as aborted:
            failed_in = self._phase
            self._last_error = aborted.error
            self._consecutive_failures += 1
            self._set_phase(SyncPhase.ERROR)
            logger.warning(f"Sync aborted during {failed_in.value}: {aborted.error}")
            if remote is not None:
                # Keep ids the server already issued for completed batches
                self._reconcile(remote, returned, sent, deleted, checkpoint=None)
            result.status = (
                SyncStatus.OFFLINE
                if aborted.error.kind == SyncErrorKind.NETWORK
                else SyncStatus.FAILED
            )
            result.error = aborted.error
            result.phase = failed_in
            result.timestamp = datetime.now()
            return result

        self._set_phase(SyncPhase.RECONCILING_IDS)
        self._reconcile(remote, returned, sent, deleted, checkpoint=started)

        self._consecutive_failures = 0
        self._last_error = None
        result.phase = SyncPhase.RECONCILING_IDS
        result.timestamp = datetime.now()
        return result

    # ==================== Download ====================

    @staticmethod
    def _check(error: SyncError | None) -> None:
        if error is not None and error.policy is ErrorPolicy.RETRY_NEXT_PASS:
            raise _PassAborted(error)

    async def _select_in(
        self, collection: Collection, column: str, ids: list[str]
    ) -> tuple[list[Row], SyncError | None]:
        if not ids:
            return [], None
        return await self.remote.select(collection.value, {column: ids})

    async def _download(self, session: AuthSession) -> _RemoteSnapshot:
        """Fetch the remote rows visible to the user, parents first."""
        linked = [
            r["id"] for r in self.repository.load(Collection.CLUBS)
            if not is_local_id(r.get("id"))
        ]
        (owned_rows, err_owned), (linked_rows, err_linked) = await asyncio.gather(
            self.remote.select(Collection.CLUBS.value, {"owner_id": session.user_id}),
            self._select_in(Collection.CLUBS, "id", linked),
        )
        self._check(err_owned)
        self._check(err_linked)

        clubs = list({r["id"]: r for r in [*owned_rows, *linked_rows]}.values())
        club_ids = [r["id"] for r in clubs]

        (sessions, err_s), (participants, err_p) = await asyncio.gather(
            self._select_in(Collection.SESSIONS, "club_id", club_ids),
            self._select_in(Collection.PARTICIPANTS, "club_id", club_ids),
        )
        self._check(err_s)
        self._check(err_p)

        session_ids = [r["id"] for r in sessions]
        (links, err_l), (attendance, err_a) = await asyncio.gather(
            self._select_in(Collection.PARTICIPANT_SESSIONS, "session_id", session_ids),
            self._select_in(Collection.ATTENDANCE, "session_id", session_ids),
        )
        self._check(err_l)
        self._check(err_a)

        logger.debug(
            f"Downloaded {len(clubs)} clubs, {len(sessions)} sessions, "
            f"{len(participants)} participants, {len(links)} links, "
            f"{len(attendance)} attendance"
        )
        return _RemoteSnapshot(
            rows={
                Collection.CLUBS: clubs,
                Collection.SESSIONS: sessions,
                Collection.PARTICIPANTS: participants,
                Collection.PARTICIPANT_SESSIONS: links,
                Collection.ATTENDANCE: attendance,
            },
            owned_club_ids={
                r["id"] for r in clubs if r.get("owner_id") == session.user_id
            },
        )

    # ==================== Merge ====================

    def _load_known(self) -> dict[str, dict[str, str | None]]:
        return dict(self.store.get(KNOWN_REMOTE_KEY) or {})

    def _merge(self, remote: _RemoteSnapshot, checkpoint: str | None) -> int:
        """Merge downloaded rows into the Local Store.

        Runs without suspending, so no repository write can slip between
        reading the local collections and writing the merged result.

        Returns:
            Number of local rows added or changed.
        """
        known = self._load_known()
        tombstones = self.repository.load_tombstones()
        before = self.repository.snapshot()
        merged: dict[Collection, list[Row]] = {}

        for collection in Collection:
            rows = merge_collection(
                before[collection],
                remote.rows[collection],
                tombstone_set(tombstones, collection.value),
            )
            rows, gone = drop_remotely_deleted(
                rows, known.get(collection.value, {}), remote.ids(collection), checkpoint
            )
            if gone:
                logger.info(f"Removed {len(gone)} {collection.value} deleted by another device")
            if collection.natural_key:
                rows = dedupe_by_key(rows, collection.natural_key)
            merged[collection] = rows

        participant_ids = {r["id"] for r in merged[Collection.PARTICIPANTS]}
        session_ids = {r["id"] for r in merged[Collection.SESSIONS]}
        merged[Collection.PARTICIPANT_SESSIONS], orphans = filter_orphans(
            merged[Collection.PARTICIPANT_SESSIONS],
            {"participant_id": participant_ids, "session_id": session_ids},
        )
        if orphans:
            logger.info(f"Dropped {len(orphans)} orphaned participant sessions")

        self.repository.write(merged)

        changed = 0
        for collection in Collection:
            old = {r.get("id"): r for r in before[collection]}
            changed += sum(1 for r in merged[collection] if old.get(r.get("id")) != r)
        return changed

    # ==================== Upload ====================

    @staticmethod
    def _differs(collection: Collection, row: Row, server: Row | None) -> bool:
        if server is None:
            return True
        return any(
            row.get(column) != server.get(column)
            for column in collection.remote_columns
            if column not in ("id", "updated_at")
        )

    def _owning_club(self, collection: Collection, row: Row, session_clubs: dict[str, str]) -> str | None:
        if collection is Collection.CLUBS:
            return row.get("id")
        if collection in (Collection.SESSIONS, Collection.PARTICIPANTS):
            return row.get("club_id")
        return session_clubs.get(row.get("session_id"))

    async def _upload(
        self,
        session: AuthSession,
        remote: _RemoteSnapshot,
        checkpoint: str | None,
        result: SyncResult,
        returned: dict[Collection, list[Row]],
        sent: dict[Collection, dict[str, str | None]],
        deleted: dict[Collection, set[str]],
    ) -> None:
        """Push local deletions, then pending rows, one batch per collection.

        Every batch's server ids are journaled before the next batch so an
        interrupted pass never uploads the same new row twice.

        The ``updated_at`` each row carried is kept in ``sent`` so that
        reconciling can tell whether it was edited while in flight.
        """
        local = self.repository.snapshot()
        local_club_ids = {r["id"] for r in local[Collection.CLUBS]}
        known = self._load_known()
        tombstones = self.repository.load_tombstones()
        session_clubs = {
            row_id: row.get("club_id")
            for row_id, row in remote.by_id(Collection.SESSIONS).items()
        }

        # Deletions: children before parents
        for collection in reversed(Collection):
            local_ids = {r.get("id") for r in local[collection]}
            server_rows = remote.by_id(collection)
            candidates = set(known.get(collection.value, {}))
            candidates |= tombstone_set(tombstones, collection.value)
            candidates -= local_ids
            doomed = []
            for row_id in sorted(candidates):
                server_row = server_rows.get(row_id)
                if server_row is None:
                    continue
                club_id = self._owning_club(collection, server_row, session_clubs)
                if collection is Collection.CLUBS:
                    allowed = row_id in remote.owned_club_ids
                else:
                    allowed = club_id in remote.owned_club_ids or club_id in local_club_ids
                if allowed:
                    doomed.append(row_id)
                else:
                    logger.debug(f"Not deleting {collection.value} {row_id} remotely: not owner")
            if not doomed:
                continue
            _, error = await self.remote.delete(collection.value, {"id": doomed})
            self._check(error)
            deleted[collection] = set(doomed)
            result.entries_deleted += len(doomed)
            logger.info(f"Deleted {len(doomed)} {collection.value} from server")

        # Upserts: parents before children
        journal: dict[str, str] = dict(self.store.get(PENDING_ID_MAP_KEY) or {})
        remote_known = {c: set(remote.ids(c)) - deleted.get(c, set()) for c in Collection}

        for collection in Collection:
            server_rows = remote.by_id(collection)
            pending: list[Row] = []
            stamps: dict[str, str | None] = {}
            for row in self.repository.load(collection):
                row = promote_record(row, journal, collection.id_fields)
                if not (is_local_id(row.get("id")) or is_modified_since(row, checkpoint)):
                    continue
                if not is_local_id(row.get("id")) and not self._differs(
                    collection, row, server_rows.get(row.get("id"))
                ):
                    continue
                stamps[row["id"]] = row.get("updated_at")
                if collection is Collection.CLUBS:
                    owner = row.get("owner_id")
                    if owner and owner != session.user_id:
                        continue
                    if not owner:
                        row = {**row, "owner_id": session.user_id, "updated_at": utc_now_iso()}
                pending.append(row)

            if collection.foreign_keys:
                pending, dangling = eligible_for_upload(
                    pending,
                    {fk: remote_known[parent] for fk, parent in collection.foreign_keys.items()},
                )
                if dangling:
                    error = SyncError(
                        SyncErrorKind.INTEGRITY,
                        f"{len(dangling)} {collection.value} reference rows unknown to the server",
                    )
                    logger.info(f"Skipping upload: {error} ({error.policy.value})")
                    result.entries_dropped += len(dangling)

            if not pending:
                continue

            payload = [remote_payload(collection, r) for r in pending]
            rows, error = await self.remote.upsert(
                collection.value, payload, on_conflict=collection.natural_key
            )
            self._check(error)
            if len(rows) != len(pending):
                raise _PassAborted(
                    SyncError(
                        SyncErrorKind.PROTOCOL,
                        f"Upsert on {collection.value} returned {len(rows)} rows "
                        f"for {len(pending)}",
                    )
                )

            for local_row, server_row in zip(pending, rows):
                server_id = server_row.get("id")
                if not server_id:
                    continue
                remote_known[collection].add(server_id)
                sent.setdefault(collection, {})[server_id] = stamps.get(local_row["id"])
                if is_local_id(local_row.get("id")) and server_id != local_row["id"]:
                    journal[local_row["id"]] = server_id
            self.store.set(PENDING_ID_MAP_KEY, journal)

            returned[collection] = rows
            result.entries_pushed += len(pending)
            logger.info(f"Uploaded {len(pending)} {collection.value}")

    # ==================== Reconcile ====================

    def _reconcile(
        self,
        remote: _RemoteSnapshot,
        returned: dict[Collection, list[Row]],
        sent: dict[Collection, dict[str, str | None]],
        deleted: dict[Collection, set[str]],
        checkpoint: str | None,
    ) -> None:
        """Rewrite temporary ids, fold in server rows and record what the
        server now holds.

        Args:
            checkpoint: New checkpoint; None keeps the old one (failed pass).
        """
        journal = self.store.get(PENDING_ID_MAP_KEY) or {}
        self.repository.apply_id_map(journal)
        for collection, rows in returned.items():
            if collection.natural_key:
                self._adopt_server_ids(collection, rows)
            self.repository.merge_returned(collection, rows, sent.get(collection, {}))

        server: dict[Collection, dict[str, Row]] = {}
        for collection in Collection:
            rows = {
                r["id"]: r for r in remote.rows[collection]
                if r.get("id") not in deleted.get(collection, set())
            }
            rows.update({r["id"]: r for r in returned.get(collection, []) if r.get("id")})
            server[collection] = rows

        session_clubs = {
            row_id: row.get("club_id") for row_id, row in server[Collection.SESSIONS].items()
        }
        known = {
            collection.value: {
                row_id: self._owning_club(collection, row, session_clubs)
                for row_id, row in server[collection].items()
            }
            for collection in Collection
        }

        values: dict[str, Any] = {PENDING_ID_MAP_KEY: None, KNOWN_REMOTE_KEY: known}
        tombstones = self.repository.load_tombstones()
        pruned = prune_tombstones(
            tombstones, {collection.value: set(server[collection]) for collection in Collection}
        )
        if pruned != tombstones:
            values[TOMBSTONES_KEY] = pruned
        if checkpoint is not None:
            values[LAST_SYNC_KEY] = checkpoint
        self.store.set_many(values)
        if journal:
            logger.info(f"Promoted {len(journal)} temporary ids")

    def _adopt_server_ids(self, collection: Collection, server_rows: list[Row]) -> None:
        """Give local join rows the id the server stored their natural key under.

        Two devices can create the same pair independently; the upsert on the
        natural key then answers with the row that already existed.
        """
        key = collection.natural_key
        server_ids = {
            tuple(r.get(k) for k in key): r["id"] for r in server_rows if r.get("id")
        }
        rows = self.repository.load(collection)
        adopted = []
        for row in rows:
            server_id = server_ids.get(tuple(row.get(k) for k in key))
            if server_id and server_id != row.get("id"):
                row = {**row, "id": server_id}
            adopted.append(row)
        if adopted != rows:
            self.repository.write({collection: adopted})

    # ==================== Status & Loop ====================

    def pending_changes(self) -> dict[str, int]:
        """Local rows not yet confirmed by the server, per collection."""
        checkpoint = self.store.get(LAST_SYNC_KEY)
        return {
            collection.value: sum(
                1 for r in self.repository.load(collection)
                if is_modified_since(r, checkpoint)
            )
            for collection in Collection
        }

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        last = self.last_sync
        return {
            "is_syncing": self._syncing,
            "phase": self._phase.value,
            "last_sync": last.isoformat() if last else None,
            "consecutive_failures": self._consecutive_failures,
            "last_error": str(self._last_error) if self._last_error else None,
            "pending": self.pending_changes(),
            "tombstones": {
                name: len(ids) for name, ids in self.repository.load_tombstones().items()
            },
        }

    async def sync_loop(
        self,
        interval_seconds: float = 60,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                await self.sync_now(force=True)
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    def start_auto_sync(self, interval_seconds: float = 60) -> None:
        """Start the sync loop as a background task (no-op if running)."""
        if self._auto_task is not None and not self._auto_task.done():
            logger.info("Auto-sync already running")
            return
        self._auto_stop = asyncio.Event()
        self._auto_task = asyncio.create_task(
            self.sync_loop(interval_seconds, self._auto_stop)
        )

    async def stop_auto_sync(self) -> None:
        """Stop the background sync loop and wait for it to finish."""
        if self._auto_task is None:
            return
        self._auto_stop.set()
        await self._auto_task
        self._auto_task = None
        self._auto_stop = None
        logger.info("Auto-sync stopped")
