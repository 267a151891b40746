import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

logger = logging.getLogger("ember_chat.watchdog")

ExpireCallback = Callable[[], Union[Awaitable[None], None]]


class InactivityWatchdog:
    """
    Resettable one-shot timer that fires ``on_expire`` after a quiet period.

    Every :meth:`reset` reschedules the single pending firing. Once fired the
    watchdog stays inert until the next reset. Use it as a context manager (or
    call :meth:`close`) so the timer is released on every teardown path.
    """

    def __init__(self, on_expire: ExpireCallback) -> None:
        self._on_expire = on_expire
        self._handle: asyncio.TimerHandle | None = None
        self._expire_task: asyncio.Future[None] | None = None
        self._closed = False
        self.fire_count = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def reset(self, duration_minutes: float) -> None:
        """Schedule expiry *duration_minutes* from now; ``<= 0`` leaves it disarmed."""
        if self._closed:
            raise RuntimeError("InactivityWatchdog is closed")
        self.cancel()
        if duration_minutes <= 0:
            logger.debug("[EmberChat Watchdog] Auto-unload disabled (duration=%s).", duration_minutes)
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(duration_minutes * 60.0, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def close(self) -> None:
        self.cancel()
        self._closed = True

    async def wait_expired(self) -> None:
        """Wait for the most recent expiry callback to finish, if one is running."""
        task = self._expire_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        self.fire_count += 1
        logger.info("[EmberChat Watchdog] Inactivity period elapsed.")
        result = self._on_expire()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(self._log_failure)
            self._expire_task = task

    @staticmethod
    def _log_failure(task: "asyncio.Future[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "[EmberChat Watchdog] Expiry handler failed: %s", exc, exc_info=exc
            )

    def __enter__(self) -> "InactivityWatchdog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
