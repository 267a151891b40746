"""
EmberChat: a private, fully local chat client for GGUF language models.

Conversations stream token by token from an in-process llama.cpp model, get a
short title after the first exchange, persist to a local SQLite file, and the
model is unloaded automatically after a configurable idle period.
"""

from .controller import ControllerState, SessionController
from .engine import LlamaCppEngine
from .exceptions import EmberChatError, EngineSetupError, ModelLoadError
from .models import ChatSession, ConversationEntry
from .orchestrator import GenerationOrchestrator
from .storage import SettingsStore, SqliteChatHistoryStore, open_stores
from .titles import TitleGenerator
from .watchdog import InactivityWatchdog

# Note: llama_cpp itself is imported lazily by LlamaCppEngine.load_model.

__all__ = [
    "ChatSession",
    "ControllerState",
    "ConversationEntry",
    "EmberChatError",
    "EngineSetupError",
    "GenerationOrchestrator",
    "InactivityWatchdog",
    "LlamaCppEngine",
    "ModelLoadError",
    "SessionController",
    "SettingsStore",
    "SqliteChatHistoryStore",
    "TitleGenerator",
    "open_stores",
]
