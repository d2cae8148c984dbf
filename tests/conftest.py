"""Shared fixtures: in-memory Local Store and a fake remote backend."""

import asyncio
from collections import defaultdict
from typing import Any

import pytest

from rollcall.errors import SyncError
from rollcall.models import utc_now_iso
from rollcall.remote import static_session_provider
from rollcall.repository import EntityRepository
from rollcall.storage import LocalStore
from rollcall.sync import SyncEngine

USER_ID = "user-1"


def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    for column, value in (filters or {}).items():
        if value is None:
            if row.get(column) is not None:
                return False
        elif isinstance(value, (list, tuple, set, frozenset)):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


class FakeRemoteStore:
    """In-memory stand-in for RemoteStore that records every call."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self.upserts: list[tuple[str, list[dict[str, Any]]]] = []
        self.failures: dict[tuple[str, str], SyncError] = {}
        self.rpc_results: dict[str, Any] = {}
        self.is_online = True
        # Seconds each upsert spends on the wire
        self.upsert_delay = 0.0
        # Stamp updated_at on write like a server-side trigger
        self.stamp_updated_at = False
        self._next_id = 0

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables[table].extend(dict(r) for r in rows)

    def calls_to(self, operation: str, table: str | None = None) -> list[tuple[str, str]]:
        return [
            c for c in self.calls
            if c[0] == operation and (table is None or c[1] == table)
        ]

    def _new_id(self, table: str) -> str:
        self._next_id += 1
        return f"{table}-{self._next_id}"

    async def select(self, table, filters=None, columns="*", limit=None):
        await asyncio.sleep(0)
        self.calls.append(("select", table))
        if error := self.failures.get(("select", table)):
            return [], error
        rows = [dict(r) for r in self.tables[table] if _matches(r, filters)]
        if limit is not None:
            rows = rows[:limit]
        return rows, None

    async def upsert(self, table, rows, on_conflict=None, ignore_duplicates=False):
        await asyncio.sleep(0)
        self.calls.append(("upsert", table))
        self.upserts.append((table, [dict(r) for r in rows]))
        if self.upsert_delay:
            await asyncio.sleep(self.upsert_delay)
        if error := self.failures.get(("upsert", table)):
            return [], error

        stored = []
        for row in rows:
            if self.stamp_updated_at:
                row = {**row, "updated_at": utc_now_iso()}
            key = tuple(on_conflict) if on_conflict else ("id",)
            existing = None
            if all(row.get(k) is not None for k in key):
                existing = next(
                    (r for r in self.tables[table] if all(r.get(k) == row[k] for k in key)),
                    None,
                )
            if existing is not None:
                if not ignore_duplicates:
                    existing.update(row)
                stored.append(dict(existing))
                continue
            new = dict(row)
            new.setdefault("id", self._new_id(table))
            self.tables[table].append(new)
            stored.append(dict(new))
        return stored, None

    async def delete(self, table, filters):
        await asyncio.sleep(0)
        self.calls.append(("delete", table))
        if error := self.failures.get(("delete", table)):
            return None, error
        self.tables[table] = [r for r in self.tables[table] if not _matches(r, filters)]
        return None, None

    async def rpc(self, name, params=None):
        await asyncio.sleep(0)
        self.calls.append(("rpc", name))
        return self.rpc_results.get(name, []), None

    async def check_online(self):
        return self.is_online


@pytest.fixture
def store():
    """Create an in-memory LocalStore for testing."""
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def sessions():
    return static_session_provider(USER_ID, "token-1")


@pytest.fixture
def repository(store, remote, sessions):
    repository = EntityRepository(store, remote=remote, session_provider=sessions)
    repository.open()
    return repository


@pytest.fixture
def offline_repository(repository, remote):
    """Repository whose remote is unreachable."""
    remote.is_online = False
    return repository


@pytest.fixture
def engine(repository):
    return SyncEngine(repository, min_interval_seconds=0)
