import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Ticker:
    """Runs an async callback every ``interval`` seconds until stopped.

    ``stop()`` sets the cancellation token, cancels the owned task (including
    an awaited callback in flight) and waits for it, so no tick can mutate
    state after ``stop()`` returns.

    PTB's ``job_queue.run_repeating`` is not used here: ``schedule_removal()``
    neither cancels a running callback nor lets the caller await it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        first: float | None = None,
    ) -> None:
        self.name = name
        self.interval = float(interval)
        self.first = self.interval if first is None else float(first)
        self._callback = callback
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")

    async def stop(self) -> None:
        self._stopped.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # called from inside our own callback: the token ends the loop
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sleep(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def _run(self) -> None:
        if not await self._sleep(self.first):
            return
        while not self._stopped.is_set():
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("TICKER_CALLBACK_FAILED name=%s error=%s", self.name, exc, exc_info=True)
            if not await self._sleep(self.interval):
                return
