"""
Shared fakes for the EmberChat test suite.

No model files or native libraries are needed: ``FakeEngine`` replays scripted
token streams, and the history/settings fakes keep everything in memory while
recording what was written.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ember_chat.controller import SessionController
from ember_chat.models import ChatSession
from ember_chat.titles import TitleGenerator

# Script items: a ``str`` is yielded as a token, an ``asyncio.Event`` blocks the
# stream until it is set, and an exception instance is raised in place.
Script = list[Any]

DEFAULT_CHAT_SCRIPT: Script = ["Hello", " there", "!"]
DEFAULT_TITLE_SCRIPT: Script = ["Greeting", " Chat"]


class FakeEngine:
    """Scripted InferenceEngine.

    Chat streams (which always start with a system turn) pop from
    ``chat_scripts``; the single-turn title prompt pops from ``title_scripts``.
    """

    def __init__(
        self,
        chat_scripts: list[Script] | None = None,
        title_scripts: list[Script] | None = None,
        *,
        log: list[str] | None = None,
    ) -> None:
        self.chat_scripts = list(chat_scripts or [])
        self.title_scripts = list(title_scripts or [])
        self.log = log if log is not None else []
        self.load_error: BaseException | None = None
        self.load_calls: list[dict[str, Any]] = []
        self.chat_calls: list[dict[str, Any]] = []
        self.title_calls: list[dict[str, Any]] = []
        self.dispose_count = 0
        self.loaded = False

    async def load_model(self, path, threads=4, context_size=2048) -> None:
        self.load_calls.append({"path": path, "threads": threads, "context_size": context_size})
        await asyncio.sleep(0)
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True
        self.log.append("load")

    async def generate_chat(self, messages, max_tokens, temperature):
        call = {"messages": list(messages), "max_tokens": max_tokens, "temperature": temperature}
        if messages and messages[0]["role"] == "system":
            self.chat_calls.append(call)
            script = self.chat_scripts.pop(0) if self.chat_scripts else DEFAULT_CHAT_SCRIPT
        else:
            self.title_calls.append(call)
            script = self.title_scripts.pop(0) if self.title_scripts else DEFAULT_TITLE_SCRIPT

        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            await asyncio.sleep(0)
            yield item

    async def dispose(self) -> None:
        self.dispose_count += 1
        self.loaded = False
        self.log.append("dispose")


class MemoryHistoryStore:
    """ChatHistoryStore holding serialized snapshots, like the sqlite store does."""

    def __init__(self, sessions: list[ChatSession] | None = None, *, log: list[str] | None = None):
        self.data: list[dict[str, Any]] = [session.to_dict() for session in sessions or []]
        self.log = log if log is not None else []
        self.save_count = 0
        self.fail_saves = False
        self.fail_loads = False

    async def load(self) -> list[ChatSession]:
        if self.fail_loads:
            raise RuntimeError("history unavailable")
        return [ChatSession.from_dict(item) for item in self.data]

    async def save(self, sessions) -> None:
        await asyncio.sleep(0)
        if self.fail_saves:
            raise OSError("disk full")
        self.data = [session.to_dict() for session in sessions]
        self.save_count += 1
        self.log.append("save")

    def ids(self) -> list[str]:
        return [item["id"] for item in self.data]


class MemorySettings:
    def __init__(self, system_prompt: str = "You are a test assistant.", minutes: float = 30):
        self.system_prompt = system_prompt
        self.minutes = minutes
        self.reset_count = 0

    async def load_system_prompt(self) -> str:
        return self.system_prompt

    async def save_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt

    async def load_auto_save_minutes(self) -> float:
        return self.minutes

    async def save_auto_save_minutes(self, minutes: float) -> None:
        self.minutes = minutes

    async def reset(self) -> None:
        self.system_prompt = "You are a helpful assistant."
        self.minutes = 30
        self.reset_count += 1


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


# ========================================================================
# Fixtures
# ========================================================================


@pytest.fixture
def ops() -> list[str]:
    """Ordered log of engine/store side effects shared by the fakes."""
    return []


@pytest.fixture
def engine(ops) -> FakeEngine:
    return FakeEngine(log=ops)


@pytest.fixture
def store(ops) -> MemoryHistoryStore:
    return MemoryHistoryStore(log=ops)


@pytest.fixture
def settings() -> MemorySettings:
    return MemorySettings()


@pytest.fixture
async def controller(engine, store, settings):
    ctrl = SessionController(
        engine,
        store,
        settings,
        title_generator=TitleGenerator(engine, timeout=0.2),
    )
    async with ctrl:
        yield ctrl


@pytest.fixture
async def ready(controller):
    """Controller with a model loaded and a fresh session active."""
    await controller.load_model("/models/test.gguf")
    return controller
