"""Tests for the command-line entry point."""

import argparse
import json
import logging

import pytest

from rollcall.__main__ import JSONFormatter, build_engine, cmd_clubs, cmd_sync
from rollcall.config import Config


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.storage.db_path = str(tmp_path / "rollcall.db")
    return config


class TestJSONFormatter:
    def test_formats_record_as_json(self):
        record = logging.LogRecord(
            "rollcall.sync.engine", logging.INFO, __file__, 1, "Uploaded %d clubs", (2,), None
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["component"] == "rollcall.sync.engine"
        assert data["message"] == "Uploaded 2 clubs"


class TestCommands:
    def test_build_engine_without_remote(self, config):
        engine = build_engine(config)

        assert engine.remote is None
        assert engine.store.get("clubs") is None
        engine.store.close()

    @pytest.mark.asyncio
    async def test_sync_requires_remote(self, config, monkeypatch, capsys):
        monkeypatch.setattr("rollcall.__main__.load_config", lambda path: config)

        code = await cmd_sync(argparse.Namespace(config=None, json=False))

        assert code == 1
        assert "Remote not configured" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_clubs_lists_local_clubs(self, config, monkeypatch, capsys):
        engine = build_engine(config)
        engine.store.set("clubs", [{"id": "c1", "name": "Chess", "owner_id": None}])
        engine.store.set("participants", [{"id": f"p{i}", "club_id": "c1"} for i in range(25)])
        engine.store.close()
        monkeypatch.setattr("rollcall.__main__.load_config", lambda path: config)

        code = await cmd_clubs(argparse.Namespace(config=None, json=False))

        out = capsys.readouterr().out
        assert code == 0
        assert "Chess [c1] (unclaimed)" in out
        assert "Participants: 25/30 (near limit)" in out
