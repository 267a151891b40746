"""Error types raised across EmberChat, plus the llama-cpp setup guard."""

from __future__ import annotations

import importlib
from types import ModuleType

_INSTALL_HINT = (
    "Install it with:\n"
    "  pip install llama-cpp-python\n"
    "See https://github.com/abetlen/llama-cpp-python#installation for GPU builds."
)


class EmberChatError(Exception):
    """Base class for all EmberChat errors."""


class EngineSetupError(EmberChatError):
    """The local inference backend is not installed or unusable."""


class ModelLoadError(EmberChatError):
    """A model file could not be loaded."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ModelNotLoadedError(EmberChatError):
    """An operation needs a loaded model but none is loaded."""


class GenerationError(EmberChatError):
    """The token stream failed mid-generation."""


class GenerationInProgressError(EmberChatError):
    """A generation is already running for this session."""


class NoActiveSessionError(EmberChatError):
    """An operation needs an active chat session."""


class SessionNotFoundError(EmberChatError, KeyError):
    """No stored session has the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "session not found"


class InvalidIndexError(EmberChatError, IndexError):
    """An entry index is out of range or points at the wrong kind of entry."""


class PersistenceError(EmberChatError):
    """Chat history or settings could not be written."""


def require_llama_cpp(context: str) -> ModuleType:
    """Import ``llama_cpp`` or raise :class:`EngineSetupError` naming *context*."""
    try:
        return importlib.import_module("llama_cpp")
    except ImportError as exc:
        raise EngineSetupError(
            f"[EmberChat] {context} requires 'llama-cpp-python', which is not installed.\n"
            f"{_INSTALL_HINT}"
        ) from exc
