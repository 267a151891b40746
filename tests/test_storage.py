"""
Tests for ember_chat.storage.

Covers:
  - KeyValueStore upsert/delete/clear
  - Chat history save/load round-trip and order preservation
  - Corrupt or missing history treated as empty
  - Write failures surfaced as PersistenceError
  - Settings defaults, persistence, bad values, and reset()
  - Markdown and JSONL export
"""

import json
import sqlite3
from unittest.mock import patch

import pytest

from ember_chat.config import DEFAULT_AUTO_SAVE_MINUTES, DEFAULT_SYSTEM_PROMPT
from ember_chat.exceptions import PersistenceError, SessionNotFoundError
from ember_chat.models import ChatSession, ConversationEntry, new_entry_id
from ember_chat.storage import (
    AUTO_SAVE_MINUTES_KEY,
    CHAT_HISTORY_KEY,
    KeyValueStore,
    export_jsonl,
    export_markdown,
    open_stores,
)


def _session(title: str, *exchanges: tuple[str, str]) -> ChatSession:
    session = ChatSession.new()
    session.title = title
    for question, answer in exchanges:
        user = ConversationEntry(id=new_entry_id(), user_text=question)
        session.entries.append(user)
        session.entries.append(
            ConversationEntry(
                id=new_entry_id("ai_"), response_text=answer, timestamp=user.timestamp
            )
        )
    return session


@pytest.fixture
def stores(tmp_path):
    kv, history, settings = open_stores(tmp_path / "chat.sqlite3")
    yield kv, history, settings
    kv.close()


# ========================================================================
# KeyValueStore
# ========================================================================


class TestKeyValueStore:
    def test_get_missing_returns_none(self, tmp_path):
        kv = KeyValueStore(tmp_path / "kv.sqlite3")
        assert kv.get("nope") is None
        kv.close()

    def test_set_then_upsert(self, tmp_path):
        kv = KeyValueStore(tmp_path / "kv.sqlite3")
        kv.set("k", "one")
        kv.set("k", "two")
        assert kv.get("k") == "two"
        kv.close()

    def test_delete_and_clear(self, tmp_path):
        kv = KeyValueStore(tmp_path / "kv.sqlite3")
        kv.set("a", "1")
        kv.set("b", "2")
        kv.delete("a")
        assert kv.get("a") is None
        kv.clear()
        assert kv.get("b") is None
        kv.close()

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "kv.sqlite3"
        kv = KeyValueStore(path)
        assert path.exists()
        kv.close()

    def test_values_survive_reopen(self, tmp_path):
        path = tmp_path / "kv.sqlite3"
        kv = KeyValueStore(path)
        kv.set("k", "v")
        kv.close()
        reopened = KeyValueStore(path)
        assert reopened.get("k") == "v"
        reopened.close()


# ========================================================================
# Chat history
# ========================================================================


class TestChatHistoryStore:
    async def test_empty_database_loads_nothing(self, stores):
        _, history, _ = stores
        assert await history.load() == []

    async def test_round_trip_preserves_order_and_content(self, stores):
        _, history, _ = stores
        sessions = [
            _session("Newest", ("hi", "hello")),
            _session("Older", ("a", "b"), ("c", "d")),
        ]
        await history.save(sessions)

        loaded = await history.load()
        assert loaded == sessions
        assert [s.title for s in loaded] == ["Newest", "Older"]

    async def test_history_is_one_json_document(self, stores):
        kv, history, _ = stores
        await history.save([_session("One", ("q", "a"))])
        payload = json.loads(kv.get(CHAT_HISTORY_KEY))
        assert isinstance(payload, list)
        assert payload[0]["title"] == "One"

    @pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', '[{"id": "x"}]'])
    async def test_corrupt_history_loads_empty(self, stores, raw):
        kv, history, _ = stores
        kv.set(CHAT_HISTORY_KEY, raw)
        assert await history.load() == []

    async def test_read_error_loads_empty(self, stores):
        kv, history, _ = stores
        with patch.object(kv, "get", side_effect=sqlite3.OperationalError("locked")):
            assert await history.load() == []

    async def test_write_error_raises_persistence_error(self, stores):
        kv, history, _ = stores
        with patch.object(kv, "set", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(PersistenceError):
                await history.save([_session("x", ("q", "a"))])

    async def test_get_and_delete(self, stores):
        _, history, _ = stores
        keep, drop = _session("Keep", ("q", "a")), _session("Drop", ("q", "a"))
        await history.save([keep, drop])

        assert (await history.get(keep.id)).title == "Keep"
        await history.delete(drop.id)
        assert [s.id for s in await history.load()] == [keep.id]

    async def test_missing_id_raises(self, stores):
        _, history, _ = stores
        with pytest.raises(SessionNotFoundError):
            await history.get("missing")
        with pytest.raises(SessionNotFoundError):
            await history.delete("missing")


# ========================================================================
# Settings
# ========================================================================


class TestSettingsStore:
    async def test_defaults(self, stores):
        _, _, settings = stores
        assert await settings.load_system_prompt() == DEFAULT_SYSTEM_PROMPT
        assert await settings.load_auto_save_minutes() == DEFAULT_AUTO_SAVE_MINUTES

    async def test_save_and_load(self, stores):
        _, _, settings = stores
        await settings.save_system_prompt("Answer like a pirate.")
        await settings.save_auto_save_minutes(5)
        assert await settings.load_system_prompt() == "Answer like a pirate."
        assert await settings.load_auto_save_minutes() == 5

    async def test_bad_minutes_fall_back(self, stores):
        kv, _, settings = stores
        kv.set(AUTO_SAVE_MINUTES_KEY, "soon")
        assert await settings.load_auto_save_minutes() == DEFAULT_AUTO_SAVE_MINUTES

    async def test_reset_clears_settings_and_history(self, stores):
        _, history, settings = stores
        await history.save([_session("x", ("q", "a"))])
        await settings.save_system_prompt("custom")

        await settings.reset()

        assert await history.load() == []
        assert await settings.load_system_prompt() == DEFAULT_SYSTEM_PROMPT


# ========================================================================
# Export
# ========================================================================


class TestExport:
    def test_jsonl(self, tmp_path):
        session = _session("Trip", ("where?", "Lisbon"))
        target = tmp_path / "out" / "trip.jsonl"
        export_jsonl(session, target)

        lines = [json.loads(line) for line in target.read_text(encoding="utf-8").splitlines()]
        assert lines[0]["type"] == "chat_metadata"
        assert lines[0]["chat_id"] == session.id
        assert lines[0]["title"] == "Trip"
        assert [(r["role"], r["content"]) for r in lines[1:]] == [
            ("user", "where?"),
            ("assistant", "Lisbon"),
        ]

    def test_markdown(self, tmp_path):
        session = _session("Trip", ("where?", "Lisbon"))
        target = tmp_path / "trip.md"
        export_markdown(session, target)

        text = target.read_text(encoding="utf-8")
        assert text.startswith("# Trip\n")
        assert "## User" in text
        assert "## Assistant" in text
        assert text.index("where?") < text.index("Lisbon")
