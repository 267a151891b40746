"""Runtime defaults, decoding budgets, and on-disk locations."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DB_FILENAME = "ember_chat.sqlite3"
HOME_ENV_VAR = "EMBER_CHAT_HOME"

NEW_CHAT_TITLE = "New Chat"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_AUTO_SAVE_MINUTES = 30

MODEL_FILE_SUFFIX = ".gguf"
DEFAULT_THREADS = 4
DEFAULT_CONTEXT_SIZE = 2048

TITLE_TIMEOUT_SECONDS = 5.0
TITLE_MAX_CHARS = 50
TITLE_MAX_WORDS = 6
FALLBACK_TITLE_WORDS = 4

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class DecodingBudget:
    """Max output length and temperature for one generation stream."""

    max_tokens: int
    temperature: float


CHAT_DECODING = DecodingBudget(max_tokens=512, temperature=0.7)
TITLE_DECODING = DecodingBudget(max_tokens=15, temperature=0.4)


def data_dir(override: str | Path | None = None) -> Path:
    """Resolve the app data directory (``$EMBER_CHAT_HOME`` or ``~/.ember_chat``)."""
    if override is not None:
        path = Path(override)
    elif os.getenv(HOME_ENV_VAR):
        path = Path(os.environ[HOME_ENV_VAR])
    else:
        path = Path.home() / ".ember_chat"
    path = path.expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def db_path(override: str | Path | None = None) -> Path:
    return data_dir(override) / DB_FILENAME


def configure_logging(verbose: bool = False) -> None:
    """Install a root handler for command-line use. Library code never calls this."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
