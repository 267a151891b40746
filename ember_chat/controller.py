"""
Session controller: the state machine between a chat front end and the model.

It owns the active session, runs one generation at a time through
:class:`GenerationOrchestrator`, starts the title race after the first
completed exchange, persists through the injected history store, and unloads
the model when the inactivity watchdog expires.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Literal

from .config import (
    CHAT_DECODING,
    DEFAULT_AUTO_SAVE_MINUTES,
    DEFAULT_CONTEXT_SIZE,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_THREADS,
    DecodingBudget,
)
from .events import (
    DoneEvent,
    ErrorEvent,
    EventCallback,
    EventEmitter,
    NoticeEvent,
    SessionChangedEvent,
    StateChangedEvent,
    TokenEvent,
    UpdateEvent,
)
from .exceptions import (
    EmberChatError,
    EngineSetupError,
    GenerationInProgressError,
    InvalidIndexError,
    ModelLoadError,
    ModelNotLoadedError,
    NoActiveSessionError,
    SessionNotFoundError,
)
from .models import ChatSession, ConversationEntry
from .orchestrator import GenerationOrchestrator
from .titles import TitleGenerator
from .watchdog import InactivityWatchdog

if TYPE_CHECKING:
    from .protocols import ChatHistoryStore, InferenceEngine, SettingsProvider

logger = logging.getLogger("ember_chat.controller")


def _content_snapshot(session: ChatSession) -> dict[str, Any]:
    data = session.to_dict()
    data.pop("updated_at", None)
    return data


class ControllerState(str, Enum):
    NO_MODEL = "no_model"
    MODEL_LOADING = "model_loading"
    NO_SESSION = "no_session"
    SESSION_ACTIVE = "session_active"


class SessionController:
    """Top-level chat state machine. Use ``async with`` to guarantee teardown."""

    def __init__(
        self,
        engine: InferenceEngine,
        store: ChatHistoryStore,
        settings: SettingsProvider,
        *,
        title_generator: TitleGenerator | None = None,
        chat_decoding: DecodingBudget = CHAT_DECODING,
        threads: int = DEFAULT_THREADS,
        context_size: int = DEFAULT_CONTEXT_SIZE,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings
        self.chat_decoding = chat_decoding
        self.threads = threads
        self.context_size = context_size
        self.titles = title_generator or TitleGenerator(engine)

        self.state = ControllerState.NO_MODEL
        self.sessions: list[ChatSession] = []
        self.active_session: ChatSession | None = None
        self.model_path: Path | None = None
        self.system_prompt = DEFAULT_SYSTEM_PROMPT
        self.auto_save_minutes = DEFAULT_AUTO_SAVE_MINUTES

        self._events = EventEmitter()
        self._generation: GenerationOrchestrator | None = None
        self._generating_session_id: str | None = None
        self._title_tasks: dict[str, asyncio.Task[None]] = {}
        self._title_requested: set[str] = set()
        self._saved_content: dict[str, dict[str, Any]] = {}
        self._watchdog = InactivityWatchdog(self._on_inactivity)
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def __aenter__(self) -> SessionController:
        try:
            await self.initialize()
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def initialize(self) -> None:
        """Mirror stored history and settings into memory."""
        self.sessions = await self.store.load()
        self._saved_content = {session.id: _content_snapshot(session) for session in self.sessions}
        self.system_prompt = await self.settings.load_system_prompt()
        self.auto_save_minutes = await self.settings.load_auto_save_minutes()
        logger.debug("[EmberChat] Loaded %d stored chats.", len(self.sessions))

    async def aclose(self) -> None:
        """Save the active chat, release the model and the watchdog timer."""
        if self._closed:
            return
        self._closed = True
        try:
            self._abandon_generation()
            await self._cancel_title_tasks()
            if self.active_session is not None:
                await self._persist(self.active_session)
            if self.state is not ControllerState.NO_MODEL:
                await self.engine.dispose()
        finally:
            self._watchdog.close()
            self.active_session = None
            self.state = ControllerState.NO_MODEL

    # ── Observers ────────────────────────────────────────────────────────

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an observer; returns a callable that unregisters it."""
        return self._events.subscribe(callback)

    @property
    def generating(self) -> bool:
        return self._generating_session_id is not None

    @property
    def model_loaded(self) -> bool:
        return self.state in (ControllerState.NO_SESSION, ControllerState.SESSION_ACTIVE)

    @property
    def watchdog(self) -> InactivityWatchdog:
        return self._watchdog

    def _set_state(self, state: ControllerState) -> None:
        self.state = state
        self._emit_state()

    def _emit_state(self) -> None:
        self._events.emit(StateChangedEvent(state=self.state.value, generating=self.generating))

    def _notice(self, message: str, level: Literal["info", "error"] = "info") -> None:
        self._events.emit(NoticeEvent(message=message, level=level))

    def _touch_watchdog(self) -> None:
        if not self._closed and self.model_loaded:
            self._watchdog.reset(self.auto_save_minutes)

    # ── Model ────────────────────────────────────────────────────────────

    async def load_model(self, path: str | Path) -> ChatSession:
        """Load a model and start a fresh session. Raises ``ModelLoadError`` on failure."""
        if self.state is ControllerState.MODEL_LOADING:
            raise EmberChatError("A model is already loading.")
        if self.model_loaded:
            await self.unload_model()

        self._set_state(ControllerState.MODEL_LOADING)
        try:
            await self.engine.load_model(path, threads=self.threads, context_size=self.context_size)
        except Exception as exc:
            self._set_state(ControllerState.NO_MODEL)
            logger.error("[EmberChat] Failed to load model %s: %s", path, exc)
            self._notice(f"Error loading model: {exc}", level="error")
            if isinstance(exc, (ModelLoadError, EngineSetupError)):
                raise
            raise ModelLoadError(str(exc), path=str(path)) from exc

        self.model_path = Path(path)
        self.auto_save_minutes = await self.settings.load_auto_save_minutes()
        self.system_prompt = await self.settings.load_system_prompt()
        self._set_state(ControllerState.NO_SESSION)
        session = await self.start_new_session()
        self._touch_watchdog()
        return session

    async def unload_model(self) -> None:
        """Persist the active chat, dispose the engine and return to ``NO_MODEL``."""
        if not self.model_loaded:
            return
        self._abandon_generation()
        await self._cancel_title_tasks()
        session = self.active_session
        if session is not None:
            await self._persist(session)
        await self.engine.dispose()
        self.active_session = None
        self.model_path = None
        self._watchdog.cancel()
        self._set_state(ControllerState.NO_MODEL)
        self._events.emit(SessionChangedEvent(session_id=None, reason="unloaded"))

    async def _on_inactivity(self) -> None:
        if not self.model_loaded:
            return
        logger.info(
            "[EmberChat] No activity for %s minutes; saving and unloading the model.",
            self.auto_save_minutes,
        )
        await self.unload_model()
        self._notice(f"Chat saved and model unloaded after {self.auto_save_minutes} idle minutes.")

    # ── Sessions ─────────────────────────────────────────────────────────

    async def start_new_session(self) -> ChatSession:
        self._require_model()
        previous = self.active_session
        self._abandon_generation()
        session = ChatSession.new()
        self.active_session = session
        self._set_state(ControllerState.SESSION_ACTIVE)
        self._events.emit(SessionChangedEvent(session_id=session.id, reason="new"))
        if previous is not None:
            await self._persist(previous)
        return session

    async def load_session(self, session_id: str) -> ChatSession:
        """Make a stored session active. A generation for the old one is orphaned."""
        self._require_model()
        target = self._find_session(session_id)
        previous = self.active_session
        if previous is target:
            self._touch_watchdog()
            return target

        self._abandon_generation()
        self.active_session = target
        self._set_state(ControllerState.SESSION_ACTIVE)
        self._events.emit(SessionChangedEvent(session_id=target.id, reason="loaded"))
        self._touch_watchdog()
        if previous is not None:
            await self._persist(previous)
        return target

    async def delete_session(self, session_id: str) -> None:
        """Remove a session; the model stays loaded even if it was the active one."""
        active = self.active_session
        was_active = active is not None and active.id == session_id
        remaining = [session for session in self.sessions if session.id != session_id]
        if len(remaining) == len(self.sessions) and not was_active:
            raise SessionNotFoundError(f"No chat with id {session_id!r}")

        if was_active:
            self._abandon_generation()
            self.active_session = None
        task = self._title_tasks.get(session_id)
        if task is not None:
            task.cancel()
        self.sessions = remaining
        self._saved_content.pop(session_id, None)
        await self._save_collection()
        if was_active and self.model_loaded:
            self._set_state(ControllerState.NO_SESSION)
        self._events.emit(SessionChangedEvent(session_id=session_id, reason="deleted"))

    def list_sessions(self) -> list[ChatSession]:
        return list(self.sessions)

    # ── Conversation ─────────────────────────────────────────────────────

    async def send(self, text: str) -> bool:
        """
        Run one user turn to completion on the active session.

        Returns ``False`` without side effects when the text is blank or a
        generation is already running.
        """
        text = text.strip()
        if not text:
            return False
        session = self._require_session()
        if self.generating:
            logger.debug("[EmberChat] Ignoring send while generating.")
            return False

        orchestrator = GenerationOrchestrator(self.engine, self.chat_decoding)
        self._generation = orchestrator
        self._generating_session_id = session.id
        self._emit_state()
        self._touch_watchdog()
        try:
            await self._wait_for_title(session.id)
            if self._generation is not orchestrator:
                return False
            async for event in orchestrator.generate(session, text, self.system_prompt):
                await self._handle_update(session, orchestrator, event)
        finally:
            self._finish_generation(orchestrator)
        return True

    async def edit_message(self, index: int, new_text: str) -> ConversationEntry:
        """Replace a user message's text in place. Does not regenerate."""
        session = self._require_session()
        self._reject_while_generating()
        entry = self._entry_at(session, index)
        if not entry.is_user:
            raise InvalidIndexError(f"Entry {index} is not a user message.")
        text = new_text.strip()
        if not text:
            raise ValueError("Edited message must not be empty.")

        entry.user_text = text
        self._events.emit(SessionChangedEvent(session_id=session.id, reason="edited"))
        self._touch_watchdog()
        await self._persist(session)
        return entry

    async def regenerate(self, index: int) -> bool:
        """Drop the response at *index* and everything after it, then resend its prompt."""
        session = self._require_session()
        self._reject_while_generating()
        entry = self._entry_at(session, index)
        if entry.is_user or index == 0 or not session.entries[index - 1].is_user:
            raise InvalidIndexError(f"Entry {index} is not an assistant response.")

        user_text = session.entries[index - 1].user_text
        del session.entries[index:]
        self._events.emit(SessionChangedEvent(session_id=session.id, reason="truncated"))
        return await self.send(user_text)

    def cancel_generation(self) -> None:
        """Stop the running generation, keeping whatever text already streamed."""
        self._abandon_generation()

    # ── Settings ─────────────────────────────────────────────────────────

    async def update_settings(
        self,
        *,
        system_prompt: str | None = None,
        auto_save_minutes: int | None = None,
    ) -> None:
        if system_prompt is not None:
            await self.settings.save_system_prompt(system_prompt)
            self.system_prompt = system_prompt
        if auto_save_minutes is not None:
            await self.settings.save_auto_save_minutes(auto_save_minutes)
            self.auto_save_minutes = auto_save_minutes
            self._touch_watchdog()
        self._notice("Settings saved.")

    async def clear_all_data(self) -> None:
        """Forget every stored chat and reset settings to their defaults."""
        self.sessions = []
        self._saved_content.clear()
        await self._save_collection()
        await self.settings.reset()
        self.system_prompt = await self.settings.load_system_prompt()
        self.auto_save_minutes = await self.settings.load_auto_save_minutes()
        self._touch_watchdog()
        self._events.emit(SessionChangedEvent(session_id=None, reason="cleared"))
        self._notice("All data cleared.")

    async def wait_for_titles(self) -> None:
        """Wait for every in-flight title run to settle."""
        tasks = list(self._title_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────

    async def _handle_update(
        self,
        session: ChatSession,
        orchestrator: GenerationOrchestrator,
        event: UpdateEvent,
    ) -> None:
        active = self.active_session
        if active is None or active.id != event.session_id or self._generation is not orchestrator:
            logger.debug("[EmberChat] Discarding update for inactive session %s.", event.session_id)
            return

        self._events.emit(event)
        if isinstance(event, TokenEvent):
            self._touch_watchdog()
        elif isinstance(event, DoneEvent):
            self._finish_generation(orchestrator)
            await self._persist(session)
            self._touch_watchdog()
            self._maybe_start_title(session, event.user_text)
        elif isinstance(event, ErrorEvent):
            self._finish_generation(orchestrator)
            self._notice(f"Generation error: {event.message}", level="error")
            await self._persist(session)
            self._touch_watchdog()

    def _finish_generation(self, orchestrator: GenerationOrchestrator) -> None:
        if self._generation is not orchestrator:
            return
        self._generation = None
        self._generating_session_id = None
        self._emit_state()

    def _abandon_generation(self) -> None:
        orchestrator = self._generation
        if orchestrator is None:
            return
        orchestrator.cancel()
        self._finish_generation(orchestrator)

    def _maybe_start_title(self, session: ChatSession, user_text: str) -> None:
        if session.id in self._title_requested or session.has_generated_title:
            return
        if session.completed_exchanges() != 1:
            return
        self._title_requested.add(session.id)
        task = asyncio.create_task(self._run_title(session, user_text), name=f"title-{session.id}")
        self._title_tasks[session.id] = task
        task.add_done_callback(lambda _task, sid=session.id: self._title_tasks.pop(sid, None))

    async def _run_title(self, session: ChatSession, user_text: str) -> None:
        await self.titles.maybe_generate_title(session, user_text, on_update=self._on_title_update)
        if session is self.active_session or any(s.id == session.id for s in self.sessions):
            await self._persist(session)

    def _on_title_update(self, session: ChatSession) -> None:
        self._events.emit(SessionChangedEvent(session_id=session.id, reason="title"))

    async def _wait_for_title(self, session_id: str) -> None:
        task = self._title_tasks.get(session_id)
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _cancel_title_tasks(self) -> None:
        tasks = list(self._title_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _persist(self, session: ChatSession) -> bool:
        """
        Write *session* at the front of the collection. Empty sessions are skipped.

        ``updated_at`` only moves when the content differs from the last
        successful write; an unchanged session keeps its timestamp and its
        place in the list.
        """
        if not session.entries:
            return False
        snapshot = _content_snapshot(session)
        stored = any(existing.id == session.id for existing in self.sessions)
        if not stored or self._saved_content.get(session.id) != snapshot:
            session.touch()
            self.sessions = [existing for existing in self.sessions if existing.id != session.id]
            self.sessions.insert(0, session)
        saved = await self._save_collection()
        if saved:
            self._saved_content[session.id] = snapshot
        return saved

    async def _save_collection(self) -> bool:
        try:
            await self.store.save(list(self.sessions))
        except Exception as exc:
            # Write failures are reported, never fatal to the controller.
            logger.warning("[EmberChat] Could not save chat history: %s", exc, exc_info=True)
            self._notice(f"Could not save chat history: {exc}", level="error")
            return False
        return True

    def _find_session(self, session_id: str) -> ChatSession:
        for session in self.sessions:
            if session.id == session_id:
                return session
        raise SessionNotFoundError(f"No chat with id {session_id!r}")

    def _require_model(self) -> None:
        if not self.model_loaded:
            raise ModelNotLoadedError("Load a model first.")

    def _require_session(self) -> ChatSession:
        self._require_model()
        if self.active_session is None:
            raise NoActiveSessionError("No active chat. Start or load one first.")
        return self.active_session

    def _reject_while_generating(self) -> None:
        if self.generating:
            raise GenerationInProgressError("Wait for the current response to finish.")

    @staticmethod
    def _entry_at(session: ChatSession, index: int) -> ConversationEntry:
        if not 0 <= index < len(session.entries):
            raise InvalidIndexError(f"No entry at index {index}.")
        return session.entries[index]
