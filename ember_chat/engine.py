"""
Local GGUF inference through llama-cpp-python.

``llama_cpp`` is imported lazily so the rest of the package (history browsing,
settings, tests) works on machines without the native library.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_CONTEXT_SIZE, DEFAULT_THREADS, MODEL_FILE_SUFFIX
from .exceptions import GenerationError, ModelLoadError, ModelNotLoadedError, require_llama_cpp

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .protocols import ChatMessage

logger = logging.getLogger("ember_chat.engine")

STREAM_WORKER_JOIN_TIMEOUT_SECONDS = 0.4
_STOP_SEQUENCES = ["<|im_end|>", "<|end|>", "</s>"]


def _delta_text(chunk: Any) -> str:
    """Pull streamed text out of an OpenAI-style completion chunk."""
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def _join_worker(worker_done: threading.Event) -> None:
    """Wait for a stream worker to leave ``create_chat_completion``, however long that takes."""
    waiter = asyncio.ensure_future(asyncio.to_thread(worker_done.wait))
    try:
        done, _ = await asyncio.wait({waiter}, timeout=STREAM_WORKER_JOIN_TIMEOUT_SECONDS)
        if not done:
            logger.debug("[EmberChat Engine] Waiting for the current decode step to finish.")
        await asyncio.shield(waiter)
    except asyncio.CancelledError:
        # A second cancellation must not let the model be reused mid-decode.
        await waiter
        raise


class LlamaCppEngine:
    """InferenceEngine backed by an in-process ``llama_cpp.Llama`` instance."""

    def __init__(self) -> None:
        self._llm: Any = None
        self.model_path: Path | None = None
        self._stream_lock = asyncio.Lock()
        self._live_workers: set[tuple[threading.Event, threading.Event]] = set()

    @property
    def is_loaded(self) -> bool:
        return self._llm is not None

    async def load_model(
        self,
        path: str | Path,
        threads: int = DEFAULT_THREADS,
        context_size: int = DEFAULT_CONTEXT_SIZE,
    ) -> None:
        model_path = Path(path).expanduser()
        if not model_path.is_file():
            raise ModelLoadError(f"Model file not found: {model_path}", path=str(model_path))
        if model_path.suffix.lower() != MODEL_FILE_SUFFIX:
            logger.warning(
                "[EmberChat Engine] %s does not look like a %s file; trying anyway.",
                model_path.name,
                MODEL_FILE_SUFFIX,
            )

        llama_cpp = require_llama_cpp("Loading a model")
        await self.dispose()

        logger.info(
            "[EmberChat Engine] Loading %s (threads=%d, n_ctx=%d)...",
            model_path.name,
            threads,
            context_size,
        )
        factory = functools.partial(
            llama_cpp.Llama,
            model_path=str(model_path),
            n_threads=threads,
            n_ctx=context_size,
            verbose=False,
        )
        try:
            self._llm = await asyncio.to_thread(factory)
        except Exception as exc:
            raise ModelLoadError(f"Load failed: {exc}", path=str(model_path)) from exc
        self.model_path = model_path

    async def generate_chat(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[str]:
        """Stream completion text deltas; one stream runs at a time."""
        async with self._stream_lock:
            llm = self._llm
            if llm is None:
                raise ModelNotLoadedError("No model is loaded.")

            loop = asyncio.get_running_loop()
            event_queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
            cancel_event = threading.Event()
            worker_done = threading.Event()
            worker = (cancel_event, worker_done)
            message_list = [dict(message) for message in messages]

            def post(item: tuple[str, Any]) -> None:
                loop.call_soon_threadsafe(event_queue.put_nowait, item)

            def producer() -> None:
                # worker_done is set last: the loop stays alive until the worker
                # has posted its final item.
                try:
                    chunks = llm.create_chat_completion(
                        messages=message_list,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        stop=_STOP_SEQUENCES,
                        stream=True,
                    )
                    try:
                        for chunk in chunks:
                            if cancel_event.is_set():
                                break
                            text = _delta_text(chunk)
                            if text:
                                post(("chunk", text))
                    finally:
                        close = getattr(chunks, "close", None)
                        if callable(close):
                            close()
                except Exception as exc:
                    post(("error", exc))
                else:
                    post(("done", None))
                finally:
                    worker_done.set()

            self._live_workers.add(worker)
            thread = threading.Thread(target=producer, name="ember-stream-worker", daemon=True)
            thread.start()
            try:
                while True:
                    kind, payload = await event_queue.get()
                    if kind == "chunk":
                        yield str(payload)
                        continue
                    if kind == "error":
                        raise GenerationError(str(payload)) from payload
                    break
            finally:
                cancel_event.set()
                # The lock is only released once the native decode has stopped.
                try:
                    await _join_worker(worker_done)
                finally:
                    self._live_workers.discard(worker)

    async def dispose(self) -> None:
        """Stop live streams and release the model. Safe to call repeatedly."""
        workers = list(self._live_workers)
        for cancel_event, _ in workers:
            cancel_event.set()
        for _, worker_done in workers:
            await _join_worker(worker_done)

        llm = self._llm
        self._llm = None
        self.model_path = None
        if llm is None:
            return
        close = getattr(llm, "close", None)
        if callable(close):
            await asyncio.to_thread(close)
        logger.info("[EmberChat Engine] Model unloaded.")
