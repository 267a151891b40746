"""
SQLite-backed persistence for chat history and user settings.

Everything lives in one small key/value table: the whole chat history is a
single JSON document so each save is one atomic write, and the scalar
settings sit next to it. Blocking sqlite calls are pushed to worker threads
so the event loop keeps streaming while a save is in progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from .config import DEFAULT_AUTO_SAVE_MINUTES, DEFAULT_SYSTEM_PROMPT
from .exceptions import PersistenceError, SessionNotFoundError
from .models import ChatSession, utc_now

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger("ember_chat.storage")

CHAT_HISTORY_KEY = "chat_history"
SYSTEM_PROMPT_KEY = "system_prompt"
AUTO_SAVE_MINUTES_KEY = "auto_save_minutes"


# ---------------------------------------------------------------------------
# KeyValueStore
# ---------------------------------------------------------------------------


class KeyValueStore:
    """Tiny sqlite key/value table tuned for local low-latency use."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._tune_pragmas()
        self._init_schema()

    def _tune_pragmas(self) -> None:
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute("PRAGMA temp_store = MEMORY")

    def _init_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def get(self, key: str) -> str | None:
        with self._lock:
            row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, value, utc_now().isoformat()),
            )

    def delete(self, key: str) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def clear(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("DELETE FROM kv")

    def close(self) -> None:
        with self._lock:
            self.conn.close()


# ---------------------------------------------------------------------------
# Chat history
# ---------------------------------------------------------------------------


class SqliteChatHistoryStore:
    """ChatHistoryStore keeping the ordered session list as one JSON document."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def load(self) -> list[ChatSession]:
        try:
            raw = await asyncio.to_thread(self.kv.get, CHAT_HISTORY_KEY)
        except sqlite3.Error as exc:
            logger.warning("[EmberChat Storage] Could not read chat history: %s", exc)
            return []
        if raw is None:
            return []
        return self._decode(raw)

    async def save(self, sessions: Sequence[ChatSession]) -> None:
        # Serialize on the loop thread: sessions keep mutating while the write runs.
        payload = json.dumps([session.to_dict() for session in sessions], ensure_ascii=False)
        try:
            await asyncio.to_thread(self.kv.set, CHAT_HISTORY_KEY, payload)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save chat history: {exc}") from exc

    async def get(self, session_id: str) -> ChatSession:
        for session in await self.load():
            if session.id == session_id:
                return session
        raise SessionNotFoundError(f"No chat with id {session_id!r}")

    async def delete(self, session_id: str) -> None:
        sessions = await self.load()
        remaining = [session for session in sessions if session.id != session_id]
        if len(remaining) == len(sessions):
            raise SessionNotFoundError(f"No chat with id {session_id!r}")
        await self.save(remaining)

    @staticmethod
    def _decode(raw: str) -> list[ChatSession]:
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, list):
                raise TypeError("chat history must be a JSON list")
            return [ChatSession.from_dict(item) for item in parsed]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("[EmberChat Storage] Ignoring unreadable chat history: %s", exc)
            return []


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class SettingsStore:
    """SettingsProvider over the same key/value table."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def load_system_prompt(self) -> str:
        value = await asyncio.to_thread(self.kv.get, SYSTEM_PROMPT_KEY)
        return DEFAULT_SYSTEM_PROMPT if value is None else value

    async def save_system_prompt(self, prompt: str) -> None:
        await self._write(SYSTEM_PROMPT_KEY, prompt)

    async def load_auto_save_minutes(self) -> int:
        value = await asyncio.to_thread(self.kv.get, AUTO_SAVE_MINUTES_KEY)
        if value is None:
            return DEFAULT_AUTO_SAVE_MINUTES
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "[EmberChat Storage] Bad auto-save value %r; using %d minutes.",
                value,
                DEFAULT_AUTO_SAVE_MINUTES,
            )
            return DEFAULT_AUTO_SAVE_MINUTES

    async def save_auto_save_minutes(self, minutes: int) -> None:
        await self._write(AUTO_SAVE_MINUTES_KEY, str(int(minutes)))

    async def reset(self) -> None:
        """Delete all stored data: chat history and settings alike."""
        try:
            await asyncio.to_thread(self.kv.clear)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not clear data: {exc}") from exc

    async def _write(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self.kv.set, key, value)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save setting '{key}': {exc}") from exc


def open_stores(path: Path) -> tuple[KeyValueStore, SqliteChatHistoryStore, SettingsStore]:
    """Open the database at *path* and wrap it in the history and settings stores."""
    kv = KeyValueStore(path)
    return kv, SqliteChatHistoryStore(kv), SettingsStore(kv)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_jsonl(session: ChatSession, target: Path) -> None:
    """Write a metadata line followed by one line per message."""
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        handle.write(
            json.dumps(
                {
                    "type": "chat_metadata",
                    "chat_id": session.id,
                    "title": session.title,
                    "created_at": session.created_at.isoformat(),
                    "updated_at": session.updated_at.isoformat(),
                    "exported_at": utc_now().isoformat(),
                },
                ensure_ascii=False,
            )
            + "\n"
        )
        for entry in session.entries:
            record = {
                "type": "message",
                "id": entry.id,
                "role": "user" if entry.is_user else "assistant",
                "created_at": entry.timestamp.isoformat(),
                "content": entry.text,
            }
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")


def export_markdown(session: ChatSession, target: Path) -> None:
    """Write a readable Markdown transcript."""
    target.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"# {session.title}", "", f"Exported: {utc_now().isoformat()}", ""]
    for entry in session.entries:
        role = "User" if entry.is_user else "Assistant"
        lines.append(f"## {role} ({entry.timestamp.isoformat()})")
        lines.append("")
        lines.append(entry.text)
        lines.append("")
    target.write_text("\n".join(lines), encoding="utf-8")
