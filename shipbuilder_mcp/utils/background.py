# shipbuilder_mcp/utils/background.py
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs an async callback on a fixed interval inside the running event loop.

    The task is owned by whichever service constructs it: the service calls
    start() during its own startup and stop() during shutdown, so no timer
    outlives the service that created it.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning(f"PeriodicTask '{self.name}' already running. Skipping start.")
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"PeriodicTask '{self.name}' started (interval {self.interval_seconds}s).")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self._callback()
                logger.debug(f"PeriodicTask '{self.name}' tick finished: {result!r}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failed tick must not kill the loop; the next tick retries.
                logger.error(f"PeriodicTask '{self.name}' tick failed: {e}", exc_info=True)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"PeriodicTask '{self.name}' stopped.")
