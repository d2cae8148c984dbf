"""Tests for the PostgREST client."""

import json

import httpx
import pytest

from rollcall.errors import SyncErrorKind
from rollcall.remote import RemoteStore, static_session_provider
from rollcall.remote.client import classify_response, filter_params


def make_remote(handler, **kwargs) -> RemoteStore:
    return RemoteStore(
        "https://example.supabase.co/",
        "anon-key",
        session_provider=kwargs.pop("session_provider", None),
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestFilterParams:
    """Tests for filter translation."""

    def test_scalar_list_and_null(self):
        params = filter_params({
            "owner_id": "u1",
            "club_id": ["a", "b"],
            "share_code": None,
            "is_long_term_sick": False,
        })

        assert params == {
            "owner_id": "eq.u1",
            "club_id": "in.(a,b)",
            "share_code": "is.null",
            "is_long_term_sick": "eq.false",
        }

    def test_values_with_reserved_characters_are_quoted(self):
        assert filter_params({"name": ["a,b"]}) == {"name": 'in.("a,b")'}


class TestClassifyResponse:
    """Tests for mapping responses onto error kinds."""

    def test_auth(self):
        error = classify_response(httpx.Response(401, json={"message": "JWT expired"}))
        assert error.kind == SyncErrorKind.AUTH
        assert error.message == "JWT expired"

    def test_constraint_by_code(self):
        response = httpx.Response(400, json={"code": "23503", "message": "fk violation"})
        error = classify_response(response)
        assert error.kind == SyncErrorKind.CONSTRAINT
        assert error.code == "23503"

    def test_conflict(self):
        assert classify_response(httpx.Response(409, text="dup")).kind == SyncErrorKind.CONSTRAINT

    def test_server_error(self):
        assert classify_response(httpx.Response(503)).kind == SyncErrorKind.NETWORK

    def test_other_client_error(self):
        assert classify_response(httpx.Response(404, json={})).kind == SyncErrorKind.PROTOCOL


class TestRemoteStore:
    """Tests for requests, retries and reachability."""

    @pytest.mark.asyncio
    async def test_select_builds_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": "s1"}])

        remote = make_remote(
            handler, session_provider=static_session_provider("u1", "user-jwt")
        )

        rows, error = await remote.select("sessions", {"club_id": ["c1", "c2"]})

        assert error is None
        assert rows == [{"id": "s1"}]
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/sessions"
        assert request.url.params["select"] == "*"
        assert request.url.params["club_id"] == "in.(c1,c2)"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer user-jwt"
        assert remote.is_online

    @pytest.mark.asyncio
    async def test_anonymous_requests_use_api_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        remote = make_remote(handler)
        await remote.select("clubs")

        assert seen[0].headers["Authorization"] == "Bearer anon-key"

    @pytest.mark.asyncio
    async def test_upsert_sends_batch_with_merge_preference(self):
        seen = []

        def handler(request):
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                201, json=[{**row, "id": f"srv-{i}"} for i, row in enumerate(body)]
            )

        remote = make_remote(handler)
        rows = [
            {"participant_id": "p1", "session_id": "s1"},
            {"participant_id": "p2", "session_id": "s1", "updated_at": "2024-01-01"},
        ]

        stored, error = await remote.upsert(
            "participant_sessions", rows, on_conflict=("participant_id", "session_id")
        )

        assert error is None
        assert [r["id"] for r in stored] == ["srv-0", "srv-1"]
        assert len(seen) == 1
        request = seen[0]
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "participant_id,session_id"
        assert request.url.params["columns"] == "participant_id,session_id,updated_at"
        assert request.headers["Prefer"] == (
            "return=representation,resolution=merge-duplicates,missing=default"
        )
        assert json.loads(request.content) == rows

    @pytest.mark.asyncio
    async def test_upsert_empty_batch_makes_no_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        remote = make_remote(handler)
        assert await remote.upsert("clubs", []) == ([], None)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(409, json={"code": "23505", "message": "duplicate key"})

        remote = make_remote(handler)
        rows, error = await remote.upsert("clubs", [{"name": "x"}])

        assert rows == []
        assert error.kind == SyncErrorKind.CONSTRAINT
        assert error.status_code == 409
        assert len(calls) == 1
        assert remote.is_online

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"message": "boom"})

        remote = make_remote(handler, max_retries=3)
        rows, error = await remote.select("clubs")

        assert rows == []
        assert error.kind == SyncErrorKind.NETWORK
        assert len(calls) == 3
        assert remote.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        responses = [httpx.Response(502), httpx.Response(200, json=[{"id": "c1"}])]

        def handler(request):
            return responses.pop(0)

        remote = make_remote(handler)
        rows, error = await remote.select("clubs")

        assert error is None
        assert rows == [{"id": "c1"}]
        assert remote.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_connection_error_marks_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        remote = make_remote(handler, max_retries=2)
        rows, error = await remote.select("clubs")

        assert rows == []
        assert error.kind == SyncErrorKind.NETWORK
        assert not remote.is_online
        assert await remote.check_online() is False

    @pytest.mark.asyncio
    async def test_check_online(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        remote = make_remote(handler)

        assert not remote.is_online
        assert await remote.check_online() is True
        assert seen[0].url.params["limit"] == "0"
        assert seen[0].url.params["select"] == "id"

    @pytest.mark.asyncio
    async def test_delete_requires_filters(self):
        def handler(request):
            raise AssertionError("no request expected")

        remote = make_remote(handler)
        _, error = await remote.delete("clubs", {})

        assert error.kind == SyncErrorKind.PROTOCOL

    @pytest.mark.asyncio
    async def test_delete_sends_filters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        remote = make_remote(handler)
        _, error = await remote.delete("attendance", {"session_id": ["s1", "s2"]})

        assert error is None
        assert seen[0].method == "DELETE"
        assert seen[0].url.params["session_id"] == "in.(s1,s2)"
        assert seen[0].headers["Prefer"] == "return=minimal"

    @pytest.mark.asyncio
    async def test_rpc(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"club_id": "c1", "club_name": "Chess"}])

        remote = make_remote(handler)
        data, error = await remote.rpc("get_club_by_share_code", {"p_share_code": "ABC123"})

        assert error is None
        assert data[0]["club_name"] == "Chess"
        assert seen[0].url.path == "/rest/v1/rpc/get_club_by_share_code"
        assert json.loads(seen[0].content) == {"p_share_code": "ABC123"}
