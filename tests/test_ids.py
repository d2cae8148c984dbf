"""Tests for entity identifiers."""

from rollcall.ids import (
    LocalId,
    RemoteId,
    is_local_id,
    new_local_id,
    parse_id,
    promote_record,
)


class TestIds:
    """Tests for id parsing and generation."""

    def test_new_local_id_format(self):
        """Temporary ids look like local-<millis>-<hex>."""
        raw = str(new_local_id())

        assert raw.startswith("local-")
        millis, suffix = raw[len("local-"):].split("-")
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_new_local_ids_are_unique(self):
        ids = {str(new_local_id()) for _ in range(100)}
        assert len(ids) == 100

    def test_parse_id(self):
        assert parse_id("local-1-abc") == LocalId("1-abc")
        assert parse_id("2b8e-uuid") == RemoteId("2b8e-uuid")
        assert str(parse_id("local-1-abc")) == "local-1-abc"

    def test_is_local_id(self):
        assert is_local_id("local-123-abcdef012")
        assert not is_local_id("c0ffee")
        assert not is_local_id(None)
        assert not is_local_id("")


class TestPromoteRecord:
    """Tests for rewriting temporary ids."""

    def test_promotes_id_and_foreign_keys(self):
        record = {
            "id": "local-1-a",
            "participant_id": "local-2-b",
            "session_id": "server-s",
            "note": "local-1-a",
        }
        id_map = {"local-1-a": "server-1", "local-2-b": "server-2"}

        promoted = promote_record(record, id_map, ("id", "participant_id", "session_id"))

        assert promoted["id"] == "server-1"
        assert promoted["participant_id"] == "server-2"
        assert promoted["session_id"] == "server-s"
        # Fields not listed are never touched
        assert promoted["note"] == "local-1-a"

    def test_does_not_mutate_input(self):
        record = {"id": "local-1-a"}
        promote_record(record, {"local-1-a": "server-1"}, ("id",))
        assert record["id"] == "local-1-a"

    def test_unmapped_temporary_id_is_kept(self):
        promoted = promote_record({"id": "local-9-z"}, {"local-1-a": "x"}, ("id",))
        assert promoted["id"] == "local-9-z"

    def test_remote_ids_are_never_rewritten(self):
        promoted = promote_record({"id": "server-1"}, {"server-1": "other"}, ("id",))
        assert promoted["id"] == "server-1"
