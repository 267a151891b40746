import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

from .config import CHAT_DECODING, DEFAULT_SYSTEM_PROMPT, DecodingBudget
from .events import DoneEvent, ErrorEvent, TokenEvent, UpdateEvent
from .exceptions import GenerationInProgressError
from .models import ChatSession, ConversationEntry, new_entry_id, utc_now
from .protocols import ChatMessage, InferenceEngine, close_stream

logger = logging.getLogger("ember_chat.orchestrator")

_END_OF_STREAM = object()


def build_chat_messages(
    entries: Sequence[ConversationEntry], system_prompt: str = DEFAULT_SYSTEM_PROMPT
) -> list[ChatMessage]:
    """Render the entry sequence as role-tagged turns behind one system turn."""
    messages: list[ChatMessage] = [{"role": "system", "content": system_prompt}]
    for entry in entries:
        if entry.response_text:
            messages.append({"role": "assistant", "content": entry.response_text})
        else:
            messages.append({"role": "user", "content": entry.user_text})
    return messages


async def _next_token(stream: AsyncIterator[str]) -> Any:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return _END_OF_STREAM


class GenerationOrchestrator:
    """
    Drives one primary token stream for a user turn and folds it into the session.

    The session passed to :meth:`generate` is the only object mutated, so a
    caller that switches its notion of "active session" mid-stream can never
    have a different session written to. Each yielded event carries the id of
    the session captured when generation started.
    """

    def __init__(self, engine: InferenceEngine, decoding: DecodingBudget = CHAT_DECODING):
        self.engine = engine
        self.decoding = decoding
        self._active = False
        self._cancelled = False
        self._pending: asyncio.Future[Any] | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop consuming the stream. Text received so far stays in the session."""
        if not self._active:
            return
        self._cancelled = True
        self._active = False
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    async def generate(
        self,
        session: ChatSession,
        user_text: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> AsyncIterator[UpdateEvent]:
        """
        Append *user_text* to *session*, stream the reply into it and yield updates.

        Yields a ``TokenEvent`` per token, then exactly one terminal ``DoneEvent``
        or ``ErrorEvent``. Nothing terminal is yielded after :meth:`cancel`.
        """
        if self._active:
            raise GenerationInProgressError(f"Session {session.id} is already generating.")
        text = user_text.strip()
        if not text:
            raise ValueError("user_text must not be empty")

        self._active = True
        self._cancelled = False
        session_id = session.id
        user_entry = self._append_user_entry(session, text)
        assistant_entry: ConversationEntry | None = None
        messages = build_chat_messages(session.entries, system_prompt)
        tokens: list[str] = []

        stream = self.engine.generate_chat(
            messages,
            max_tokens=self.decoding.max_tokens,
            temperature=self.decoding.temperature,
        )
        start_time = time.perf_counter()
        try:
            while True:
                self._pending = asyncio.ensure_future(_next_token(stream))
                try:
                    token = await self._pending
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if self._cancelled and (current is None or not current.cancelling()):
                        logger.info(
                            "[EmberChat Stream] Generation for session %s cancelled after %d tokens.",
                            session_id,
                            len(tokens),
                        )
                        return
                    raise
                finally:
                    self._pending = None

                if token is _END_OF_STREAM:
                    break
                if self._cancelled:
                    return

                tokens.append(str(token))
                joined = "".join(tokens)
                if assistant_entry is None:
                    assistant_entry = ConversationEntry(
                        id=new_entry_id("ai_"),
                        response_text=joined,
                        timestamp=user_entry.timestamp,
                    )
                    session.entries.append(assistant_entry)
                else:
                    assistant_entry.response_text = joined
                yield TokenEvent(
                    session_id=session_id,
                    entry_id=assistant_entry.id,
                    token=str(token),
                    text=joined,
                )
        except Exception as exc:
            self._active = False
            logger.warning(
                "[EmberChat Stream] Generation failed after %d tokens: %s", len(tokens), exc
            )
            yield ErrorEvent(session_id=session_id, error=exc)
            return
        finally:
            self._active = False
            await close_stream(stream)

        elapsed = time.perf_counter() - start_time
        logger.debug(
            "[EmberChat Stream] %d tokens in %.3fs for session %s.",
            len(tokens),
            elapsed,
            session_id,
        )
        yield DoneEvent(
            session_id=session_id,
            user_text=text,
            response_text="".join(tokens),
        )

    @staticmethod
    def _append_user_entry(session: ChatSession, text: str) -> ConversationEntry:
        # An unanswered user entry (failed or cancelled before the first token)
        # is resumed when the text matches and replaced otherwise, so the
        # sequence keeps alternating. A resumed entry keeps its id but is
        # stamped with the time of the new attempt.
        if session.entries and session.entries[-1].is_user:
            dangling = session.entries[-1]
            if dangling.user_text == text:
                dangling.timestamp = utc_now()
                return dangling
            session.entries.pop()
            logger.debug("[EmberChat Stream] Replacing unanswered entry %s.", dangling.id)

        entry = ConversationEntry(id=new_entry_id(), user_text=text, timestamp=utc_now())
        session.entries.append(entry)
        return entry
