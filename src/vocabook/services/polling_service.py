"""Service for periodically refreshing the due count."""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from vocabook.config import settings
from vocabook.exceptions import RemoteUnavailable
from vocabook.services.due_count import DueCountAggregator

logger = logging.getLogger(__name__)

DueCountListener = Callable[[int], None]


class DueCountPoller:
    """Background task that reloads the due count and notifies listeners."""

    def __init__(
        self,
        aggregator: DueCountAggregator,
        poll_seconds: Optional[float] = None,
        listeners: Optional[List[DueCountListener]] = None,
    ):
        """Initialize the poller with an aggregator and its listeners."""
        self.aggregator = aggregator
        if poll_seconds is None:
            poll_seconds = settings.due_count.poll_seconds
        self.poll_seconds = poll_seconds
        self.listeners: List[DueCountListener] = list(listeners or [])
        self.tasks: Dict[str, asyncio.Task] = {}
        self.running = False
        self.last_count: Optional[int] = None

    def add_listener(self, listener: DueCountListener) -> None:
        self.listeners.append(listener)

    async def start(self) -> None:
        """Start the polling task."""
        if self.running:
            return

        self.running = True
        logger.info(f"Starting due-count poller (every {self.poll_seconds}s)")
        self.tasks["due_count"] = asyncio.create_task(self._run_polling())

    async def stop(self) -> None:
        """Stop the polling task, dropping any load still in flight."""
        if not self.running:
            return

        self.running = False
        logger.info("Stopping due-count poller...")

        for task in self.tasks.values():
            task.cancel()

        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()

    async def poll_once(self) -> int:
        """Reload the index, count and notify listeners."""
        self.aggregator.invalidate()
        count = await self.aggregator.get_due_count_async()
        self.last_count = count
        for listener in self.listeners:
            try:
                listener(count)
            except Exception as e:
                logger.error(f"Due-count listener {listener!r} failed: {e}")
        return count

    async def _run_polling(self) -> None:
        """Run the polling loop."""
        while self.running:
            try:
                await self.poll_once()
                await asyncio.sleep(self.poll_seconds)
            except asyncio.CancelledError:
                break
            except RemoteUnavailable as e:
                logger.error(f"Due-count poll failed, keeping last count: {e}")
                await asyncio.sleep(self.poll_seconds)
            except Exception as e:
                logger.error(f"Error in due-count polling task: {e}")
                await asyncio.sleep(self.poll_seconds)
