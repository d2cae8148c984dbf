"""Local-first repository for clubs, sessions, participants and attendance.

Every write lands in the Local Store before any network attempt. Remote
calls are opportunistic: they run only when a remote is configured, was
reachable at last contact and a user is signed in, and their failures are
logged instead of raised.
"""

import asyncio
import contextlib
import logging
from datetime import date
from typing import Any, AsyncIterator, Iterable, Mapping

from .errors import SyncError, SyncErrorKind
from .ids import is_local_id, new_local_id, promote_record
from .limits import ClubUsage
from .models import (
    AttendanceRecord,
    Club,
    Collection,
    Participant,
    ParticipantSession,
    Session,
    remote_payload,
    utc_now_iso,
)
from .remote import AuthSession, RemoteStore, SessionProvider
from .storage import LocalStore
from .sync.merge import (
    TOMBSTONES_KEY,
    add_tombstones,
    dedupe_by_key,
    merge_collection,
    tombstone_set,
)

logger = logging.getLogger(__name__)

# Keys written by releases that did not namespace storage
LEGACY_KEYS = [c.value for c in Collection] + [TOMBSTONES_KEY]

Row = dict[str, Any]


class EntityRepository:
    """Local-first CRUD for every entity collection."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore | None = None,
        session_provider: SessionProvider | None = None,
    ):
        """Initialize the repository.

        Args:
            store: Local Store holding the collections.
            remote: Remote backend client; None means offline-only.
            session_provider: Source of the signed-in identity.
        """
        self.store = store
        self.remote = remote
        self.session_provider = session_provider
        # Set by the sync engine while a pass runs; new remote calls stay local
        self.hold_remote = False
        self._remote_calls = 0
        self._remote_idle = asyncio.Event()
        self._remote_idle.set()

    def open(self) -> None:
        """Connect the Local Store and migrate legacy keys."""
        self.store.connect()
        self.store.migrate_keys(LEGACY_KEYS)

    @property
    def is_online(self) -> bool:
        return self.remote is not None and self.remote.is_online

    async def check_online(self) -> bool:
        """Probe the remote backend and remember the result."""
        if self.remote is None:
            return False
        return await self.remote.check_online()

    # ==================== Local Store Access ====================

    def load(self, collection: Collection) -> list[Row]:
        return list(self.store.get(collection.value) or [])

    def load_tombstones(self) -> dict[str, list[str]]:
        return dict(self.store.get(TOMBSTONES_KEY) or {})

    def snapshot(self) -> dict[Collection, list[Row]]:
        """Current local rows for every collection."""
        return {c: self.load(c) for c in Collection}

    def write(
        self,
        collections: Mapping[Collection, list[Row]],
        tombstones: Mapping[str, list[str]] | None = None,
    ) -> None:
        """Persist several collections (and tombstones) in one transaction."""
        values: dict[str, Any] = {c.value: rows for c, rows in collections.items()}
        if tombstones is not None:
            values[TOMBSTONES_KEY] = dict(tombstones)
        self.store.set_many(values)

    def find(self, collection: Collection, row_id: str) -> Row | None:
        for row in self.load(collection):
            if row.get("id") == row_id:
                return row
        return None

    def _put(self, collection: Collection, row: Row) -> Row:
        """Insert or replace a row by id."""
        rows = self.load(collection)
        for index, existing in enumerate(rows):
            if existing.get("id") == row["id"]:
                rows[index] = row
                break
        else:
            rows.append(row)
        self.store.set(collection.value, rows)
        return row

    def apply_id_map(self, id_map: Mapping[str, str]) -> int:
        """Replace temporary ids with server ids everywhere they appear.

        Rewrites each entity's own id and every foreign key in every
        collection, plus tombstones, in a single Local Store transaction.

        Args:
            id_map: Temporary id -> server id.

        Returns:
            Number of rows changed.
        """
        if not id_map:
            return 0

        changed = 0
        updates: dict[Collection, list[Row]] = {}
        for collection in Collection:
            rows = self.load(collection)
            promoted = [promote_record(r, id_map, collection.id_fields) for r in rows]
            diff = sum(1 for old, new in zip(rows, promoted) if old != new)
            if diff:
                changed += diff
                updates[collection] = dedupe_by_key(promoted, ("id",))

        tombstones = self.load_tombstones()
        new_tombstones = tombstones
        for collection in Collection:
            dead = tombstone_set(tombstones, collection.value)
            moved = [new for old, new in id_map.items() if old in dead]
            if moved:
                new_tombstones = add_tombstones(new_tombstones, collection.value, moved)

        self.write(updates, new_tombstones if new_tombstones != tombstones else None)
        if changed:
            logger.debug(f"Promoted {len(id_map)} ids across {changed} rows")
        return changed

    def merge_remote(self, collection: Collection, remote_rows: list[Row]) -> list[Row]:
        """Merge server rows into a local collection (last writer wins).

        Tombstoned ids are not reintroduced and rows sharing a natural key
        collapse to the newest one.

        Returns:
            The merged collection as persisted.
        """
        tombstones = tombstone_set(self.load_tombstones(), collection.value)
        merged = merge_collection(self.load(collection), remote_rows, tombstones)
        if collection.natural_key:
            merged = dedupe_by_key(merged, collection.natural_key)
        self.store.set(collection.value, merged)
        return merged

    def merge_returned(
        self,
        collection: Collection,
        returned: list[Row],
        sent: Mapping[str, str | None],
    ) -> int:
        """Fold the rows an upsert answered with into the Local Store.

        A local row whose ``updated_at`` no longer matches the value it was
        uploaded with was edited while the upload was in flight. It keeps
        its fields and is restamped so it stays newer than the server copy
        and goes out with the next pass.

        Args:
            collection: Collection the rows belong to.
            returned: Rows as stored by the server (ids already promoted).
            sent: Server id -> ``updated_at`` the row carried when uploaded.

        Returns:
            Number of rows kept back for the next upload.
        """
        rows = self.load(collection)
        local = {r.get("id"): r for r in rows}
        fresh: list[Row] = []
        edited: set[str] = set()
        for server_row in returned:
            row_id = server_row.get("id")
            current = local.get(row_id)
            if current is not None and row_id in sent and current.get("updated_at") != sent[row_id]:
                edited.add(row_id)
            else:
                fresh.append(server_row)

        if edited:
            now = utc_now_iso()
            self.store.set(
                collection.value,
                [{**r, "updated_at": now} if r.get("id") in edited else r for r in rows],
            )
            logger.info(f"Kept {len(edited)} {collection.value} edited during upload")
        self.merge_remote(collection, fresh)
        return len(edited)

    # ==================== Remote Helpers ====================

    async def current_session(self) -> AuthSession | None:
        if self.session_provider is None:
            return None
        return await self.session_provider.get_session()

    async def _remote_session(self) -> AuthSession | None:
        """Session to use for a remote call, or None to stay local."""
        if not self.is_online or self.hold_remote:
            return None
        return await self.current_session()

    @contextlib.asynccontextmanager
    async def _remote_call(self) -> AsyncIterator[AuthSession | None]:
        """Scope a block of remote calls.

        Yields the session to use, or None to stay local. The block counts
        as in flight until it exits so a sync pass can wait for it before
        reading local state.
        """
        self._remote_calls += 1
        self._remote_idle.clear()
        try:
            yield await self._remote_session()
        finally:
            self._remote_calls -= 1
            if not self._remote_calls:
                self._remote_idle.set()

    async def wait_for_remote_calls(self) -> None:
        """Wait until no repository remote call is in flight."""
        while self._remote_calls:
            await self._remote_idle.wait()

    async def _push(
        self, collection: Collection, rows: list[Row]
    ) -> tuple[dict[str, str], SyncError | None]:
        """Upsert rows whose foreign keys are already permanent.

        On success temporary ids are promoted everywhere and the server's
        copy is merged back.

        Returns:
            Tuple of (temporary id -> server id, error).
        """
        ready = [
            r for r in rows
            if not any(is_local_id(r.get(fk)) for fk in collection.foreign_keys)
        ]
        if not ready or self.remote is None:
            return {}, None

        payload = [remote_payload(collection, r) for r in ready]
        returned, error = await self.remote.upsert(
            collection.value, payload, on_conflict=collection.natural_key
        )
        if error:
            logger.info(f"Saved {collection.value} locally, remote write deferred: {error}")
            return {}, error

        id_map: dict[str, str] = {}
        if len(returned) == len(ready):
            id_map = {
                local["id"]: server["id"]
                for local, server in zip(ready, returned)
                if server.get("id") and server["id"] != local["id"]
            }
            sent = {
                server["id"]: local.get("updated_at")
                for local, server in zip(ready, returned)
                if server.get("id")
            }
            self.apply_id_map(id_map)
            self.merge_returned(collection, returned, sent)
        return id_map, None

    async def _delete_remote(
        self, collection: Collection, filters: dict[str, Any]
    ) -> SyncError | None:
        _, error = await self.remote.delete(collection.value, filters)
        if error:
            logger.info(f"Remote delete on {collection.value} deferred: {error}")
        return error

    async def _delete_remote_steps(
        self, steps: list[tuple[Collection, dict[str, Any]]]
    ) -> None:
        """Run remote deletes in order, stopping at the first failure."""
        async with self._remote_call() as session:
            if session is None:
                return
            for collection, filters in steps:
                if await self._delete_remote(collection, filters):
                    return

    async def _refresh(self, collection: Collection, filters: dict[str, Any]) -> None:
        """Pull remote rows for a scope into the Local Store, if online."""
        async with self._remote_call() as session:
            if session is None:
                return
            rows, error = await self.remote.select(collection.value, filters)
            if error:
                logger.info(f"Using local {collection.value}, refresh failed: {error}")
                return
            self.merge_remote(collection, rows)

    async def _save(self, collection: Collection, row: Row) -> Row:
        now = utc_now_iso()
        row = dict(row)
        if not row.get("id"):
            row["id"] = str(new_local_id())
            row["created_at"] = row.get("created_at") or now
        row["updated_at"] = now
        self._put(collection, row)

        async with self._remote_call() as session:
            if session is not None:
                id_map, _ = await self._push(collection, [row])
                row_id = id_map.get(row["id"], row["id"])
                return self.find(collection, row_id) or row
        return row

    # ==================== Clubs ====================

    async def get_clubs(self) -> list[Club]:
        """All local clubs, refreshed from the clubs the user owns."""
        async with self._remote_call() as session:
            if session is not None:
                await self._refresh(Collection.CLUBS, {"owner_id": session.user_id})
        return [Club.from_dict(r) for r in self.load(Collection.CLUBS)]

    async def get_club(self, club_id: str) -> Club | None:
        if not is_local_id(club_id):
            await self._refresh(Collection.CLUBS, {"id": club_id})
        row = self.find(Collection.CLUBS, club_id)
        return Club.from_dict(row) if row else None

    async def save_club(self, club: Club) -> Club:
        """Create or update a club.

        A new club created while signed in is owned by the signed-in user;
        one created signed out stays unclaimed until the first sync.
        """
        row = club.to_dict()
        if not row.get("id") and not row.get("owner_id"):
            session = await self.current_session()
            if session is not None:
                row["owner_id"] = session.user_id
        saved = await self._save(Collection.CLUBS, row)
        return Club.from_dict(saved)

    async def delete_club(self, club_id: str) -> None:
        """Delete a club and everything that belongs to it.

        The local delete always happens. The cloud delete only runs when
        online and the signed-in user owns the club.
        """
        club = self.find(Collection.CLUBS, club_id)
        session_ids = {
            r["id"] for r in self.load(Collection.SESSIONS) if r.get("club_id") == club_id
        }
        participant_ids = {
            r["id"] for r in self.load(Collection.PARTICIPANTS) if r.get("club_id") == club_id
        }

        self._remove_locally(
            {
                Collection.CLUBS: {club_id},
                Collection.SESSIONS: session_ids,
                Collection.PARTICIPANTS: participant_ids,
            }
        )

        async with self._remote_call() as session:
            if session is None:
                logger.info(f"Offline - club {club_id} deleted locally only")
                return
            if club is None or is_local_id(club_id):
                return
            await self._delete_club_remote(session, club, session_ids, participant_ids)

    async def _delete_club_remote(
        self,
        session: AuthSession,
        club: Row,
        session_ids: set[str],
        participant_ids: set[str],
    ) -> None:
        """Delete a club and its children from the server, children first."""
        club_id = club["id"]
        if club.get("owner_id") != session.user_id:
            denied = SyncError(
                SyncErrorKind.FORBIDDEN, f"{session.user_id} does not own club {club_id}"
            )
            logger.info(f"Club {club_id} removed locally only: {denied} ({denied.policy.value})")
            return

        remote_sessions = [i for i in session_ids if not is_local_id(i)]
        remote_participants = [i for i in participant_ids if not is_local_id(i)]
        steps: list[tuple[Collection, dict[str, Any]]] = []
        if remote_participants:
            steps.append((Collection.PARTICIPANT_SESSIONS, {"participant_id": remote_participants}))
            steps.append((Collection.ATTENDANCE, {"participant_id": remote_participants}))
        if remote_sessions:
            steps.append((Collection.PARTICIPANT_SESSIONS, {"session_id": remote_sessions}))
            steps.append((Collection.ATTENDANCE, {"session_id": remote_sessions}))
        steps.append((Collection.PARTICIPANTS, {"club_id": club_id}))
        steps.append((Collection.SESSIONS, {"club_id": club_id}))
        steps.append((Collection.CLUBS, {"id": club_id}))

        # Children first for the foreign-key constraints
        for collection, filters in steps:
            if await self._delete_remote(collection, filters):
                logger.info("Club deleted locally, cloud delete will be retried by sync")
                return
        logger.info(f"Club {club_id} deleted from cloud")

    def _remove_locally(self, targets: Mapping[Collection, set[str]]) -> None:
        """Remove rows and their dependents, tombstoning every removed id.

        Attendance and participant-session rows referencing a removed
        session or participant go too.
        """
        dead_sessions = set(targets.get(Collection.SESSIONS, set()))
        dead_participants = set(targets.get(Collection.PARTICIPANTS, set()))
        tombstones = self.load_tombstones()
        updates: dict[Collection, list[Row]] = {}

        for collection in Collection:
            rows = self.load(collection)
            ids = set(targets.get(collection, set()))
            if collection in (Collection.PARTICIPANT_SESSIONS, Collection.ATTENDANCE):
                ids |= {
                    r["id"] for r in rows
                    if r.get("session_id") in dead_sessions
                    or r.get("participant_id") in dead_participants
                }
            if not ids:
                continue
            kept = [r for r in rows if r.get("id") not in ids]
            if len(kept) != len(rows):
                updates[collection] = kept
            tombstones = add_tombstones(tombstones, collection.value, ids)

        self.write(updates, tombstones)

    async def reset_club_stats(self, club_id: str) -> Club | None:
        """Start a fresh statistics period for a club.

        Stamps today's date on the club and removes its attendance records.
        """
        row = self.find(Collection.CLUBS, club_id)
        if row is None:
            return None

        session_ids = {
            r["id"] for r in self.load(Collection.SESSIONS) if r.get("club_id") == club_id
        }
        attendance_ids = {
            r["id"] for r in self.load(Collection.ATTENDANCE)
            if r.get("session_id") in session_ids
        }
        self._remove_locally({Collection.ATTENDANCE: attendance_ids})

        row = {**row, "stats_reset_date": date.today().isoformat()}
        saved = await self._save(Collection.CLUBS, row)
        return Club.from_dict(saved)

    async def join_club_by_code(self, share_code: str) -> Club | None:
        """Join a shared club and download its data.

        Returns:
            The joined club, or None when offline, not found or on failure.
        """
        async with self._remote_call() as session:
            if session is None:
                logger.info("Cannot join a club while offline")
                return None
            return await self._join_club(session, share_code)

    async def _join_club(self, session: AuthSession, share_code: str) -> Club | None:
        data, error = await self.remote.rpc(
            "get_club_by_share_code", {"p_share_code": share_code.upper()}
        )
        if error or not data:
            logger.info(f"No club found with code {share_code}: {error or 'empty'}")
            return None

        found = data[0]
        club_row = {
            "id": found["club_id"],
            "name": found.get("club_name", ""),
            "description": found.get("club_description") or "",
            "owner_id": found.get("owner_id"),
            "share_code": found.get("share_code"),
            "created_at": found.get("created_at"),
            "updated_at": found.get("updated_at"),
        }
        club_id = club_row["id"]

        _, error = await self.remote.upsert(
            "club_members",
            [{"club_id": club_id, "user_id": session.user_id}],
            on_conflict=("club_id", "user_id"),
            ignore_duplicates=True,
        )
        if error:
            logger.warning(f"Could not record club membership: {error}")

        (sessions, s_err), (participants, p_err) = await asyncio.gather(
            self.remote.select(Collection.SESSIONS.value, {"club_id": club_id}),
            self.remote.select(Collection.PARTICIPANTS.value, {"club_id": club_id}),
        )
        links: list[Row] = []
        attendance: list[Row] = []
        session_ids = [s["id"] for s in sessions]
        if session_ids:
            (links, l_err), (attendance, a_err) = await asyncio.gather(
                self.remote.select(
                    Collection.PARTICIPANT_SESSIONS.value, {"session_id": session_ids}
                ),
                self.remote.select(Collection.ATTENDANCE.value, {"session_id": session_ids}),
            )
            for err in (l_err, a_err):
                if err:
                    logger.warning(f"Partial club download: {err}")
        for err in (s_err, p_err):
            if err:
                logger.warning(f"Partial club download: {err}")

        self.merge_remote(Collection.CLUBS, [club_row])
        self.merge_remote(Collection.SESSIONS, sessions)
        self.merge_remote(Collection.PARTICIPANTS, participants)
        self.merge_remote(Collection.PARTICIPANT_SESSIONS, links)
        self.merge_remote(Collection.ATTENDANCE, attendance)

        logger.info(
            f"Joined club {club_row['name']}: {len(sessions)} sessions, "
            f"{len(participants)} participants"
        )
        return Club.from_dict(self.find(Collection.CLUBS, club_id) or club_row)

    def clubs_owned(self, user_id: str) -> int:
        return sum(1 for r in self.load(Collection.CLUBS) if r.get("owner_id") == user_id)

    def get_club_usage(self, club_id: str) -> ClubUsage:
        """Participant and session counts for limit checks."""
        return ClubUsage(
            participants=sum(
                1 for r in self.load(Collection.PARTICIPANTS) if r.get("club_id") == club_id
            ),
            sessions=sum(
                1 for r in self.load(Collection.SESSIONS) if r.get("club_id") == club_id
            ),
        )

    # ==================== Sessions ====================

    async def get_sessions(self, club_id: str) -> list[Session]:
        if not is_local_id(club_id):
            await self._refresh(Collection.SESSIONS, {"club_id": club_id})
        return [
            Session.from_dict(r)
            for r in self.load(Collection.SESSIONS)
            if r.get("club_id") == club_id
        ]

    async def save_session(self, session: Session) -> Session:
        saved = await self._save(Collection.SESSIONS, session.to_dict())
        return Session.from_dict(saved)

    async def delete_session(self, session_id: str) -> None:
        existed = self.find(Collection.SESSIONS, session_id) is not None
        self._remove_locally({Collection.SESSIONS: {session_id}})
        if existed and not is_local_id(session_id):
            await self._delete_remote_steps([
                (Collection.PARTICIPANT_SESSIONS, {"session_id": session_id}),
                (Collection.ATTENDANCE, {"session_id": session_id}),
                (Collection.SESSIONS, {"id": session_id}),
            ])

    # ==================== Participants ====================

    async def get_participants(self, club_id: str) -> list[Participant]:
        if not is_local_id(club_id):
            await self._refresh(Collection.PARTICIPANTS, {"club_id": club_id})
        return [
            Participant.from_dict(r)
            for r in self.load(Collection.PARTICIPANTS)
            if r.get("club_id") == club_id
        ]

    async def save_participant(self, participant: Participant) -> Participant:
        saved = await self._save(Collection.PARTICIPANTS, participant.to_dict())
        return Participant.from_dict(saved)

    async def delete_participant(self, participant_id: str) -> None:
        existed = self.find(Collection.PARTICIPANTS, participant_id) is not None
        self._remove_locally({Collection.PARTICIPANTS: {participant_id}})
        if existed and not is_local_id(participant_id):
            await self._delete_remote_steps([
                (Collection.PARTICIPANT_SESSIONS, {"participant_id": participant_id}),
                (Collection.ATTENDANCE, {"participant_id": participant_id}),
                (Collection.PARTICIPANTS, {"id": participant_id}),
            ])

    async def get_participants_with_sessions(self, club_id: str) -> list[Participant]:
        """Participants with ``preferred_session_ids`` filled in."""
        participants = await self.get_participants(club_id)
        links = self.load(Collection.PARTICIPANT_SESSIONS)
        for participant in participants:
            participant.preferred_session_ids = [
                link["session_id"] for link in links
                if link.get("participant_id") == participant.id
            ]
        return participants

    # ==================== Participant Sessions ====================

    async def get_participant_sessions(self, participant_id: str) -> list[str]:
        """Session ids the participant is assigned to."""
        return [
            r["session_id"]
            for r in self.load(Collection.PARTICIPANT_SESSIONS)
            if r.get("participant_id") == participant_id
        ]

    async def save_participant_sessions(
        self, participant_id: str, session_ids: Iterable[str]
    ) -> list[ParticipantSession]:
        """Replace the participant's assigned sessions.

        Links to sessions that remain assigned keep their ids; dropped links
        are tombstoned; new links get temporary ids.
        """
        wanted = list(dict.fromkeys(session_ids))
        rows = self.load(Collection.PARTICIPANT_SESSIONS)
        mine = [r for r in rows if r.get("participant_id") == participant_id]
        removed = {r["id"] for r in mine if r.get("session_id") not in wanted}
        present = {r.get("session_id") for r in mine if r["id"] not in removed}

        now = utc_now_iso()
        added = [
            ParticipantSession(
                participant_id=participant_id,
                session_id=session_id,
                id=str(new_local_id()),
                created_at=now,
                updated_at=now,
            ).to_dict()
            for session_id in wanted
            if session_id not in present
        ]

        kept = [r for r in rows if r["id"] not in removed] + added
        tombstones = add_tombstones(
            self.load_tombstones(), Collection.PARTICIPANT_SESSIONS.value, removed
        )
        self.write({Collection.PARTICIPANT_SESSIONS: kept}, tombstones)
        logger.debug(
            f"Participant {participant_id}: +{len(added)} -{len(removed)} session links"
        )

        async with self._remote_call() as remote_session:
            if remote_session is not None:
                stale = [i for i in removed if not is_local_id(i)]
                if stale:
                    await self._delete_remote(Collection.PARTICIPANT_SESSIONS, {"id": stale})
                await self._push(Collection.PARTICIPANT_SESSIONS, added)

        return [
            ParticipantSession.from_dict(r)
            for r in self.load(Collection.PARTICIPANT_SESSIONS)
            if r.get("participant_id") == participant_id
        ]

    # ==================== Attendance ====================

    async def get_attendance(self, session_id: str, day: str) -> list[AttendanceRecord]:
        return [
            AttendanceRecord.from_dict(r)
            for r in self.load(Collection.ATTENDANCE)
            if r.get("session_id") == session_id and r.get("date") == day
        ]

    async def get_all_attendance(self) -> list[AttendanceRecord]:
        return [AttendanceRecord.from_dict(r) for r in self.load(Collection.ATTENDANCE)]

    async def save_attendance(self, records: list[AttendanceRecord]) -> list[AttendanceRecord]:
        """Replace the attendance sheet for one session date.

        The session and date are taken from the first record. Existing rows
        for the same participant keep their ids.
        """
        if not records:
            logger.debug("No attendance records to save")
            return []

        session_id = records[0].session_id
        day = records[0].date
        rows = self.load(Collection.ATTENDANCE)
        sheet = {
            r.get("participant_id"): r
            for r in rows
            if r.get("session_id") == session_id and r.get("date") == day
        }

        now = utc_now_iso()
        fresh: list[Row] = []
        for record in records:
            row = record.to_dict()
            previous = sheet.get(row["participant_id"])
            row["id"] = row.get("id") or (previous or {}).get("id") or str(new_local_id())
            row["created_at"] = row.get("created_at") or (previous or {}).get("created_at") or now
            row["updated_at"] = now
            fresh.append(row)

        kept_ids = {r["id"] for r in fresh}
        removed = {r["id"] for r in sheet.values() if r["id"] not in kept_ids}
        others = [
            r for r in rows
            if not (r.get("session_id") == session_id and r.get("date") == day)
        ]
        tombstones = add_tombstones(
            self.load_tombstones(), Collection.ATTENDANCE.value, removed
        )
        self.write({Collection.ATTENDANCE: others + fresh}, tombstones)
        logger.debug(f"Saved {len(fresh)} attendance records for {session_id} on {day}")

        async with self._remote_call() as remote_session:
            if remote_session is not None:
                stale = [i for i in removed if not is_local_id(i)]
                if stale:
                    await self._delete_remote(Collection.ATTENDANCE, {"id": stale})
                await self._push(Collection.ATTENDANCE, fresh)

        return await self.get_attendance(session_id, day)
