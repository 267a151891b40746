"""
Best-effort chat titles generated by the local model.

A short secondary stream asks the model for a title after the first completed
exchange. Valid candidates are written to the session as they stream in; the
whole exchange races a fixed timeout, and a deterministic title derived from
the user's message is used when the model produces nothing usable. Failures
here are never surfaced to the user.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable

from .config import (
    FALLBACK_TITLE_WORDS,
    TITLE_DECODING,
    TITLE_MAX_CHARS,
    TITLE_MAX_WORDS,
    TITLE_TIMEOUT_SECONDS,
    DecodingBudget,
)
from .protocols import close_stream

if TYPE_CHECKING:
    from .models import ChatSession
    from .protocols import InferenceEngine

logger = logging.getLogger("ember_chat.titles")

TITLE_PROMPT_TEMPLATE = """Write a very short title (2-4 words) for a conversation that starts with this user query.
The title should be specific and make the conversation easy to find later.

User query: "{query}"

Requirements:
- Maximum 4 words
- No quotes or punctuation
- Specific and descriptive
- Title case

Title:"""

_STRIPPED_CHARS = ('"', "'", ".", "?", "!")
_STRIPPED_PREFIXES = ("Title:", "title:")
_ECHO_MARKERS = ("user query", "title:")


def clean_title(raw: str) -> str:
    """Drop quotes, sentence punctuation and any literal ``Title:`` prefix."""
    title = raw
    for char in _STRIPPED_CHARS:
        title = title.replace(char, "")
    for prefix in _STRIPPED_PREFIXES:
        title = title.replace(prefix, "")
    return title.strip()


def is_valid_title(title: str) -> bool:
    if not title:
        return False
    if len(title) > TITLE_MAX_CHARS:
        return False
    if len(title.split()) > TITLE_MAX_WORDS:
        return False
    lowered = title.lower()
    return not any(marker in lowered for marker in _ECHO_MARKERS)


def fallback_title(user_message: str) -> str:
    """First four words of the message, with ``...`` only when truncated."""
    words = user_message.split()
    if len(words) <= FALLBACK_TITLE_WORDS:
        return user_message.strip()
    return " ".join(words[:FALLBACK_TITLE_WORDS]) + "..."


class TitleGenerator:
    """Runs the time-bounded title stream for a session."""

    def __init__(
        self,
        engine: InferenceEngine,
        decoding: DecodingBudget = TITLE_DECODING,
        timeout: float = TITLE_TIMEOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self.decoding = decoding
        self.timeout = timeout
        self._in_flight: set[str] = set()

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def maybe_generate_title(
        self,
        session: ChatSession,
        user_message_text: str,
        on_update: Callable[[ChatSession], None] | None = None,
    ) -> str:
        """
        Generate and assign a title for *session*, returning the final title.

        Returns the current title untouched when a title run is already in
        flight for the same session.
        """
        if session.id in self._in_flight:
            logger.debug("[EmberChat Title] Title already in flight for %s.", session.id)
            return session.title

        self._in_flight.add(session.id)
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[str] = loop.create_future()
        best: str | None = None

        def notify() -> None:
            if on_update is not None:
                on_update(session)

        def resolve(reason: str) -> None:
            if not outcome.done():
                outcome.set_result(reason)

        async def consume() -> None:
            nonlocal best
            prompt = TITLE_PROMPT_TEMPLATE.format(query=user_message_text)
            stream = self.engine.generate_chat(
                [{"role": "user", "content": prompt}],
                max_tokens=self.decoding.max_tokens,
                temperature=self.decoding.temperature,
            )
            tokens: list[str] = []
            try:
                async for token in stream:
                    if outcome.done():
                        break
                    tokens.append(str(token))
                    candidate = clean_title("".join(tokens).strip())
                    if is_valid_title(candidate):
                        best = candidate
                        session.title = candidate
                        notify()
            except Exception as exc:
                logger.info("[EmberChat Title] Title stream failed: %s", exc)
                resolve("error")
                return
            finally:
                await close_stream(stream)
            resolve("done")

        async def expire() -> None:
            await asyncio.sleep(self.timeout)
            resolve("timeout")

        consumer = asyncio.create_task(consume(), name=f"title-stream-{session.id}")
        timer = asyncio.create_task(expire(), name=f"title-timer-{session.id}")
        reason = "cancelled"
        try:
            reason = await outcome
        finally:
            for task in (consumer, timer):
                task.cancel()
            await asyncio.gather(consumer, timer, return_exceptions=True)
            self._in_flight.discard(session.id)
            if best is None:
                session.title = fallback_title(user_message_text)
                logger.info(
                    "[EmberChat Title] No usable title (%s); using fallback %r.",
                    reason,
                    session.title,
                )
            else:
                session.title = best
            notify()

        return session.title
