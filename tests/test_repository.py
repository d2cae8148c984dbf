"""Tests for the local-first entity repository."""

import asyncio

import pytest

from rollcall.errors import SyncError, SyncErrorKind
from rollcall.ids import is_local_id
from rollcall.models import (
    AttendanceRecord,
    Club,
    Collection,
    Participant,
    Session,
)
from rollcall.remote import static_session_provider
from rollcall.repository import TOMBSTONES_KEY, EntityRepository

USER_ID = "user-1"


async def build_club(repository):
    """Create a club with one session, two participants and links."""
    club = await repository.save_club(Club(name="Chess"))
    session = await repository.save_session(
        Session(club_id=club.id, day_of_week="Monday", start_time="18:00", end_time="19:30")
    )
    alice = await repository.save_participant(
        Participant(club_id=club.id, first_name="Alice", last_name="A")
    )
    bob = await repository.save_participant(
        Participant(club_id=club.id, first_name="Bob", last_name="B")
    )
    await repository.save_participant_sessions(alice.id, [session.id])
    await repository.save_participant_sessions(bob.id, [session.id])
    await repository.save_attendance([
        AttendanceRecord(session_id=session.id, participant_id=alice.id, date="2024-03-04"),
        AttendanceRecord(
            session_id=session.id, participant_id=bob.id, date="2024-03-04", status="absent"
        ),
    ])
    return club, session, alice, bob


class TestOfflineRepository:
    """Offline mode has full local permissions and never calls the remote."""

    @pytest.mark.asyncio
    async def test_full_lifecycle_without_remote_calls(self, offline_repository, remote):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)

        assert is_local_id(club.id)
        assert club.owner_id == USER_ID
        assert club.created_at and club.updated_at

        clubs = await repository.get_clubs()
        assert [c.name for c in clubs] == ["Chess"]
        assert len(await repository.get_sessions(club.id)) == 1
        assert len(await repository.get_participants(club.id)) == 2

        await repository.delete_participant(bob.id)
        await repository.delete_club(club.id)
        assert await repository.join_club_by_code("ABC123") is None

        assert remote.calls == []
        assert repository.load(Collection.CLUBS) == []

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at_and_keeps_id(self, offline_repository):
        club = await offline_repository.save_club(Club(name="Chess"))
        club.name = "Chess & Go"
        club.updated_at = "2000-01-01T00:00:00+00:00"

        updated = await offline_repository.save_club(club)

        assert updated.id == club.id
        assert updated.name == "Chess & Go"
        assert updated.updated_at > "2000-01-01"
        assert len(offline_repository.load(Collection.CLUBS)) == 1

    @pytest.mark.asyncio
    async def test_club_created_signed_out_is_unclaimed(self, store, remote):
        repository = EntityRepository(
            store, remote=remote, session_provider=static_session_provider(None, None)
        )
        club = await repository.save_club(Club(name="Chess"))

        assert club.is_unclaimed
        assert remote.calls == []


class TestCascadeDelete:
    """Deleting a parent removes and tombstones its dependents."""

    @pytest.mark.asyncio
    async def test_delete_club_cascades(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)

        await repository.delete_club(club.id)

        for collection in Collection:
            assert repository.load(collection) == []
        tombstones = repository.store.get(TOMBSTONES_KEY)
        assert tombstones["clubs"] == [club.id]
        assert set(tombstones["participants"]) == {alice.id, bob.id}
        assert len(tombstones["participant_sessions"]) == 2
        assert len(tombstones["attendance"]) == 2

    @pytest.mark.asyncio
    async def test_delete_session_cascades(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)

        await repository.delete_session(session.id)

        assert repository.load(Collection.SESSIONS) == []
        assert repository.load(Collection.PARTICIPANT_SESSIONS) == []
        assert repository.load(Collection.ATTENDANCE) == []
        assert len(repository.load(Collection.PARTICIPANTS)) == 2

    @pytest.mark.asyncio
    async def test_reset_club_stats(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)

        reset = await repository.reset_club_stats(club.id)

        assert reset.stats_reset_date is not None
        assert await repository.get_all_attendance() == []
        assert len(repository.load(Collection.PARTICIPANT_SESSIONS)) == 2


class TestParticipantSessionsAndAttendance:
    """Tests for join rows and attendance sheets."""

    @pytest.mark.asyncio
    async def test_save_participant_sessions_replaces_assignments(self, offline_repository):
        repository = offline_repository
        club = await repository.save_club(Club(name="Chess"))
        s1 = await repository.save_session(Session(club.id, "Monday", "18:00", "19:00"))
        s2 = await repository.save_session(Session(club.id, "Tuesday", "18:00", "19:00"))
        p = await repository.save_participant(Participant(club.id, "Alice", "A"))

        first = await repository.save_participant_sessions(p.id, [s1.id, s2.id])
        kept_id = next(link.id for link in first if link.session_id == s1.id)
        dropped_id = next(link.id for link in first if link.session_id == s2.id)

        second = await repository.save_participant_sessions(p.id, [s1.id])

        assert [link.id for link in second] == [kept_id]
        assert await repository.get_participant_sessions(p.id) == [s1.id]
        assert dropped_id in repository.store.get(TOMBSTONES_KEY)["participant_sessions"]

        with_sessions = await repository.get_participants_with_sessions(club.id)
        assert with_sessions[0].preferred_session_ids == [s1.id]

    @pytest.mark.asyncio
    async def test_save_attendance_replaces_sheet_and_reuses_ids(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)
        before = {r.participant_id: r.id for r in await repository.get_attendance(session.id, "2024-03-04")}

        saved = await repository.save_attendance([
            AttendanceRecord(session_id=session.id, participant_id=alice.id, date="2024-03-04",
                             status="absent"),
        ])

        assert len(saved) == 1
        assert saved[0].id == before[alice.id]
        assert not saved[0].present
        tombstones = repository.store.get(TOMBSTONES_KEY)["attendance"]
        assert before[bob.id] in tombstones

    @pytest.mark.asyncio
    async def test_attendance_for_other_dates_is_untouched(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)

        await repository.save_attendance([
            AttendanceRecord(session_id=session.id, participant_id=alice.id, date="2024-03-11"),
        ])

        assert len(await repository.get_attendance(session.id, "2024-03-04")) == 2
        assert len(await repository.get_all_attendance()) == 3

    @pytest.mark.asyncio
    async def test_save_empty_attendance_is_noop(self, offline_repository):
        assert await offline_repository.save_attendance([]) == []


class TestOnlineRepository:
    """Tests for opportunistic remote writes."""

    @pytest.mark.asyncio
    async def test_save_club_online_promotes_id(self, repository, remote):
        club = await repository.save_club(Club(name="Chess"))

        assert not is_local_id(club.id)
        assert remote.tables["clubs"][0]["id"] == club.id
        assert remote.tables["clubs"][0]["owner_id"] == USER_ID
        assert [r["id"] for r in repository.load(Collection.CLUBS)] == [club.id]

    @pytest.mark.asyncio
    async def test_children_of_temporary_parent_wait_for_sync(self, repository, remote):
        remote.is_online = False
        club = await repository.save_club(Club(name="Chess"))
        remote.is_online = True

        session = await repository.save_session(Session(club.id, "Monday", "18:00", "19:00"))

        assert is_local_id(session.id)
        assert remote.calls_to("upsert", "sessions") == []

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_local_copy(self, repository, remote):
        remote.failures[("upsert", "clubs")] = SyncError(SyncErrorKind.NETWORK, "down")

        club = await repository.save_club(Club(name="Chess"))

        assert is_local_id(club.id)
        assert len(repository.load(Collection.CLUBS)) == 1

    @pytest.mark.asyncio
    async def test_get_clubs_merges_owned_remote_clubs(self, repository, remote):
        remote.seed(
            "clubs",
            {"id": "c1", "name": "Remote", "owner_id": USER_ID, "updated_at": "2024-01-01"},
            {"id": "c2", "name": "Someone else", "owner_id": "user-2"},
        )

        clubs = await repository.get_clubs()

        assert [c.id for c in clubs] == ["c1"]

    @pytest.mark.asyncio
    async def test_tombstoned_club_is_not_resurrected(self, repository, remote):
        club = await repository.save_club(Club(name="Chess"))
        remote.failures[("delete", "clubs")] = SyncError(SyncErrorKind.NETWORK, "down")

        await repository.delete_club(club.id)
        clubs = await repository.get_clubs()

        assert clubs == []
        assert len(remote.tables["clubs"]) == 1


class TestOwnership:
    """Cloud deletes only run for the club owner."""

    @pytest.mark.asyncio
    async def test_owner_delete_removes_remote_children_first(self, repository, remote):
        club, session, alice, bob = await build_club(repository)
        assert not is_local_id(session.id)
        remote.calls.clear()

        await repository.delete_club(club.id)

        deletes = [table for op, table in remote.calls if op == "delete"]
        assert deletes[-3:] == ["participants", "sessions", "clubs"]
        assert set(deletes[:-3]) == {"participant_sessions", "attendance"}
        for table in ("clubs", "sessions", "participants", "participant_sessions", "attendance"):
            assert remote.tables[table] == []

    @pytest.mark.asyncio
    async def test_non_owner_delete_is_local_only(self, repository, remote, store):
        row = {
            "id": "c-shared",
            "name": "Shared",
            "owner_id": "user-2",
            "updated_at": "2024-01-01T00:00:00+00:00",
        }
        remote.seed("clubs", row)
        store.set("clubs", [row])

        await repository.delete_club("c-shared")

        assert remote.calls_to("delete") == []
        assert repository.load(Collection.CLUBS) == []
        assert remote.tables["clubs"] == [row]


class TestJoinClub:
    """Tests for joining a club by share code."""

    @pytest.mark.asyncio
    async def test_join_downloads_club_data(self, repository, remote):
        remote.rpc_results["get_club_by_share_code"] = [{
            "club_id": "c9",
            "club_name": "Shared Chess",
            "club_description": "Tuesdays",
            "owner_id": "user-2",
            "share_code": "ABC123",
        }]
        remote.seed("sessions", {"id": "s9", "club_id": "c9", "day_of_week": "Tuesday"})
        remote.seed("participants", {"id": "p9", "club_id": "c9", "first_name": "Zoe"})
        remote.seed("participant_sessions", {"id": "ps9", "participant_id": "p9", "session_id": "s9"})
        remote.seed("attendance", {
            "id": "a9", "session_id": "s9", "participant_id": "p9", "date": "2024-01-02",
            "status": "present",
        })

        club = await repository.join_club_by_code("abc123")

        assert club.id == "c9"
        assert club.owner_id == "user-2"
        assert remote.tables["club_members"][0]["user_id"] == USER_ID
        assert [r["id"] for r in repository.load(Collection.SESSIONS)] == ["s9"]
        assert [r["id"] for r in repository.load(Collection.ATTENDANCE)] == ["a9"]
        assert await repository.get_participant_sessions("p9") == ["s9"]

    @pytest.mark.asyncio
    async def test_unknown_code_returns_none(self, repository, remote):
        assert await repository.join_club_by_code("NOPE") is None
        assert repository.load(Collection.CLUBS) == []


class TestUsageAndStatus:
    """Tests for usage counts and the online probe."""

    @pytest.mark.asyncio
    async def test_club_usage_counts(self, offline_repository):
        repository = offline_repository
        club, session, alice, bob = await build_club(repository)
        await repository.save_club(Club(name="Go"))

        usage = repository.get_club_usage(club.id)

        assert usage.participants == 2
        assert usage.sessions == 1
        assert repository.clubs_owned(USER_ID) == 2
        assert repository.clubs_owned("user-2") == 0

    @pytest.mark.asyncio
    async def test_check_online(self, repository, remote, store):
        assert await repository.check_online() is True
        remote.is_online = False
        assert await repository.check_online() is False

        assert await EntityRepository(store).check_online() is False


class TestWritesOverlappingSync:
    """Remote call tracking and folding upsert responses back in."""

    @pytest.mark.asyncio
    async def test_wait_for_remote_calls_waits_for_save_in_flight(self, repository, remote):
        remote.upsert_delay = 0.05
        saving = asyncio.create_task(repository.save_club(Club(name="Chess")))
        await asyncio.sleep(0.01)

        await repository.wait_for_remote_calls()

        assert saving.done()
        assert not is_local_id(saving.result().id)

    @pytest.mark.asyncio
    async def test_held_repository_stays_local(self, repository, remote):
        repository.hold_remote = True

        club = await repository.save_club(Club(name="Chess"))
        await repository.wait_for_remote_calls()

        assert is_local_id(club.id)
        assert remote.calls == []

    def test_merge_returned_keeps_rows_edited_in_flight(self, repository, store):
        store.set("sessions", [
            {"id": "s1", "club_id": "c1", "start_time": "20:00",
             "updated_at": "2024-01-02T00:00:00+00:00"},
            {"id": "s2", "club_id": "c1", "start_time": "09:00",
             "updated_at": "2024-01-01T00:00:00+00:00"},
        ])
        returned = [
            {"id": "s1", "club_id": "c1", "start_time": "17:00",
             "updated_at": "2024-01-03T00:00:00+00:00"},
            {"id": "s2", "club_id": "c1", "start_time": "09:00",
             "updated_at": "2024-01-03T00:00:00+00:00"},
        ]
        sent = {"s1": "2024-01-01T00:00:00+00:00", "s2": "2024-01-01T00:00:00+00:00"}

        kept = repository.merge_returned(Collection.SESSIONS, returned, sent)

        rows = {r["id"]: r for r in repository.load(Collection.SESSIONS)}
        assert kept == 1
        assert rows["s1"]["start_time"] == "20:00"
        assert rows["s1"]["updated_at"] > "2024-01-03"
        assert rows["s2"]["updated_at"] == "2024-01-03T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_second_save_during_push_is_not_overwritten(self, repository, remote):
        club = await repository.save_club(Club(name="Chess"))
        remote.upsert_delay = 0.05
        remote.stamp_updated_at = True

        first = asyncio.create_task(
            repository.save_club(Club.from_dict({**club.to_dict(), "name": "Go"}))
        )
        await asyncio.sleep(0.01)
        remote.is_online = False
        await repository.save_club(Club.from_dict({**club.to_dict(), "name": "Shogi"}))
        await first

        assert repository.find(Collection.CLUBS, club.id)["name"] == "Shogi"
