from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.thread_store import ThreadStore
from main import cli


@pytest.fixture
def cfg_path(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("MEMEX_DB_PATH", raising=False)
    monkeypatch.delenv("MEMEX_LOG_LEVEL", raising=False)
    path = tmp_path / "cfg.ini"
    path.write_text(
        "\n".join(
            [
                "[DEFAULT]",
                "provider = Mock",
                "default_model = mock",
                f"user_db = {tmp_path / 'threads.db'}",
                f"export_dir = {tmp_path / 'exports'}",
                "",
                "[LOG]",
                "active = false",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def store(tmp_path: Path) -> ThreadStore:
    return ThreadStore.open(str(tmp_path / "threads.db"))


def test_threads_lists_recent_conversations(cfg_path, store):
    first = store.create_conversation(title="Trip planning")
    store.append_message(first.id, "user", "where to?")
    store.create_conversation(title="Recipes")

    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "threads"])
    assert res.exit_code == 0, res.output
    lines = [l for l in res.output.splitlines() if l.strip()]
    assert "Recipes" in lines[0]
    assert "Trip planning" in lines[1]
    assert "(1 messages" in lines[1]


def test_threads_on_empty_database(cfg_path):
    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "threads"])
    assert res.exit_code == 0
    assert "No conversations yet" in res.output


def test_search_command(cfg_path, store):
    convo = store.create_conversation(title="Notes")
    store.append_message(convo.id, "assistant", "the answer is 42")

    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "search", "answer"])
    assert res.exit_code == 0
    assert "Notes" in res.output

    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "search", "zebra"])
    assert "No matches for 'zebra'" in res.output


def test_export_command(cfg_path, store, tmp_path):
    convo = store.create_conversation(title="Exported")
    store.append_message(convo.id, "user", "hello")

    target = tmp_path / "out.md"
    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "export", str(convo.id), str(target)])
    assert res.exit_code == 0
    assert target.read_text(encoding="utf-8").startswith("# Exported")

    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "export", str(convo.id)])
    assert res.exit_code == 0
    assert (tmp_path / "exports" / f"conversation-{convo.id}.md").exists()


def test_export_unknown_conversation_fails(cfg_path):
    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "export", "99"])
    assert res.exit_code == 1
    assert "Conversation 99 does not exist" in res.output


def test_list_models_marks_default(cfg_path):
    res = CliRunner().invoke(cli, ["-c", str(cfg_path), "-m", "openai/gpt-4", "list-models"])
    assert res.exit_code == 0
    assert "openai/gpt-4 (default)" in res.output.splitlines()


def test_invalid_config_is_reported(tmp_path):
    bad = tmp_path / "bad.ini"
    bad.write_text("[DEFAULT]\ntemperature = 9\n", encoding="utf-8")
    res = CliRunner().invoke(cli, ["-c", str(bad), "threads"])
    assert res.exit_code == 1
    assert "temperature must be between 0 and 2" in res.output


def test_init_writes_starter_config(tmp_path):
    target = tmp_path / "conf" / "config.ini"
    res = CliRunner().invoke(cli, ["init", "--path", str(target)])
    assert res.exit_code == 0
    assert target.exists()
    res = CliRunner().invoke(cli, ["init", "--path", str(target)])
    assert "already exists" in res.output
