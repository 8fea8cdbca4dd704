"""Cancellable periodic tasks and bounded awaits on the asyncio loop."""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ProbeTimeout

log = logging.getLogger("scheduler")

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, probe: str = "probe") -> T:
    """Await *awaitable* for at most *timeout* seconds.

    Raises :class:`ProbeTimeout` instead of ``asyncio.TimeoutError`` so callers
    can tell a slow host apart from other failures.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise ProbeTimeout(probe, timeout) from None


class Periodic:
    """Call *callback* every *interval* seconds until it returns something truthy.

    The run also ends after *max_attempts* calls or *max_elapsed* seconds,
    whichever comes first (``None`` = unbounded).  Exceptions raised by the
    callback are logged and count as a failed attempt.  *callback* may be a
    plain function or a coroutine function.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        interval: float,
        max_attempts: Optional[int] = None,
        max_elapsed: Optional[float] = None,
        name: str = "periodic",
        initial_delay: Optional[float] = None,
    ):
        self.callback = callback
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_elapsed = max_elapsed
        self.name = name
        self.initial_delay = interval if initial_delay is None else initial_delay
        self.attempts = 0
        self.succeeded = False
        self.exhausted = False
        self._task: Optional[asyncio.Task] = None
        self._started_at: float = 0.0

    # ── public API ───────────────────────────────────────────────────────────

    def start(self) -> "Periodic":
        if self.running:
            return self
        self.attempts = 0
        self.succeeded = self.exhausted = False
        self._started_at = time.monotonic()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    def cancel(self):
        if self._task is not None and not self._task.done():
            log.debug("%s: cancelled after %d attempts", self.name, self.attempts)
            self._task.cancel()
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started_at if self._started_at else 0.0

    def done(self) -> bool:
        return self.succeeded or self.exhausted

    def is_current(self) -> bool:
        """True when called from inside this run's own callback."""
        return self._task is not None and asyncio.current_task() is self._task

    async def wait(self):
        """Wait until the run ends on its own (success or exhaustion)."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    # ── internals ────────────────────────────────────────────────────────────

    def _out_of_budget(self) -> bool:
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            return True
        return self.max_elapsed is not None and self.elapsed >= self.max_elapsed

    async def _run(self):
        delay = self.initial_delay
        while True:
            await asyncio.sleep(delay)
            delay = self.interval
            if self._out_of_budget():
                break
            self.attempts += 1
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.warning("%s: attempt %d failed", self.name, self.attempts, exc_info=True)
                result = None
            if result:
                self.succeeded = True
                log.debug("%s: succeeded after %d attempts", self.name, self.attempts)
                return
        self.exhausted = True
        log.info(
            "%s: gave up after %d attempts / %.1fs", self.name, self.attempts, self.elapsed,
        )
