"""
Collaborator protocols consumed by the session controller.

The controller only talks to an inference engine, a chat history store and a
settings provider through these shapes, so tests and alternative backends can
plug in without touching the orchestration code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal, Protocol, TypedDict, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

    from .models import ChatSession


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# InferenceEngine
# ---------------------------------------------------------------------------


@runtime_checkable
class InferenceEngine(Protocol):
    """Owns the model lifecycle and produces token streams."""

    async def load_model(self, path: str | Path, threads: int, context_size: int) -> None: ...

    def generate_chat(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[str]: ...

    async def dispose(self) -> None: ...


# ---------------------------------------------------------------------------
# ChatHistoryStore
# ---------------------------------------------------------------------------


@runtime_checkable
class ChatHistoryStore(Protocol):
    """Durable ordered collection of chat sessions."""

    async def load(self) -> list[ChatSession]: ...

    async def save(self, sessions: Sequence[ChatSession]) -> None: ...


# ---------------------------------------------------------------------------
# SettingsProvider
# ---------------------------------------------------------------------------


@runtime_checkable
class SettingsProvider(Protocol):
    """Scalar user settings, injected into the controller."""

    async def load_system_prompt(self) -> str: ...

    async def save_system_prompt(self, prompt: str) -> None: ...

    async def load_auto_save_minutes(self) -> int: ...

    async def save_auto_save_minutes(self, minutes: int) -> None: ...

    async def reset(self) -> None: ...


async def close_stream(stream: Any) -> None:
    """Close a token stream if it supports ``aclose()``; safe to call twice."""
    aclose = getattr(stream, "aclose", None)
    if callable(aclose):
        await aclose()
