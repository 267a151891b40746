from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal, TypeAlias

logger = logging.getLogger("ember_chat.events")


# Generation updates (tagged variants produced by the orchestrator)


@dataclass(frozen=True, slots=True)
class TokenEvent:
    session_id: str
    entry_id: str
    token: str
    text: str


@dataclass(frozen=True, slots=True)
class DoneEvent:
    session_id: str
    user_text: str
    response_text: str


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    session_id: str
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


UpdateEvent: TypeAlias = TokenEvent | DoneEvent | ErrorEvent


# Controller notifications


@dataclass(frozen=True, slots=True)
class StateChangedEvent:
    state: str
    generating: bool


@dataclass(frozen=True, slots=True)
class SessionChangedEvent:
    session_id: str | None
    reason: str


@dataclass(frozen=True, slots=True)
class NoticeEvent:
    message: str
    level: Literal["info", "error"] = "info"


ControllerEvent: TypeAlias = UpdateEvent | StateChangedEvent | SessionChangedEvent | NoticeEvent
EventCallback: TypeAlias = Callable[[ControllerEvent], None]


class EventEmitter:
    """Fan-out of controller events to registered callbacks."""

    def __init__(self) -> None:
        self._callbacks: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: ControllerEvent) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                # A broken observer must not stall generation or persistence.
                logger.warning(
                    "[EmberChat Events] Listener %r failed on %s.",
                    callback,
                    type(event).__name__,
                    exc_info=True,
                )
