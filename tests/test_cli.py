"""Tests for the click CLI commands that work on local state only."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner
from conftest import entity

from localfirst_sync.cli import cli
from localfirst_sync.config import settings
from localfirst_sync.sync.state import LocalStore, TombstoneTracker


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "state_dir", str(tmp_path))
    return tmp_path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_status_counts_local_state(runner, state_dir):
    LocalStore(state_dir, "plans").replace([entity("srv-1", 100), entity("tmp-1", 100)])
    TombstoneTracker(state_dir, "plans").mark_deleted("srv-2")

    result = runner.invoke(cli, ["status", "--type", "plans"])

    assert result.exit_code == 0, result.output
    assert "plans: 2 cached, 1 provisional, 1 tombstoned" in result.output


def test_status_all_types(runner, state_dir):
    result = runner.invoke(cli, ["status"])

    assert result.exit_code == 0, result.output
    for config in settings.entity_types:
        assert f"{config.name}: 0 cached" in result.output


def test_list_prints_json(runner, state_dir):
    LocalStore(state_dir, "drills").replace([entity("d1", 100, name="Rondo")])

    result = runner.invoke(cli, ["list", "--type", "drills"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == [
        {"id": "d1", "updatedAt": "1970-01-01T00:01:40Z", "name": "Rondo"}
    ]


def test_reset_tombstones(runner, state_dir):
    tracker = TombstoneTracker(state_dir, "plans")
    tracker.mark_deleted("a")
    tracker.mark_deleted("b")

    result = runner.invoke(cli, ["reset-tombstones", "--type", "plans", "--id", "a"])

    assert result.exit_code == 0, result.output
    assert "Cleared 1 tombstone(s) for plans." in result.output
    assert TombstoneTracker(state_dir, "plans").ids() == {"b"}


def test_unknown_entity_type(runner, state_dir):
    result = runner.invoke(cli, ["list", "--type", "nope"])

    assert result.exit_code == 2
    assert "unknown entity type" in result.output


def test_create_rejects_invalid_json(runner, state_dir):
    result = runner.invoke(cli, ["create", "--type", "plans", "--data", "{oops"])

    assert result.exit_code == 2
    assert "not valid JSON" in result.output


def test_missing_token_is_reported(runner, state_dir, monkeypatch):
    monkeypatch.setattr(settings, "api_token", "")

    result = runner.invoke(cli, ["reconcile", "--type", "plans"])

    assert result.exit_code == 1
    assert "SYNC_API_TOKEN" in result.output


def test_watch_accepts_stream_path(runner):
    result = runner.invoke(cli, ["watch", "--help"])

    assert result.exit_code == 0
    assert "--path" in result.output
    assert "SYNC_EVENTS_PATH" in result.output
