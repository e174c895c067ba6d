"""Bounded queue between webhook receipt and engine processing.

Webhook routes only parse and enqueue; a fixed pool of worker tasks feeds
events to the engine. When the queue is full, submit() refuses the event
and the route answers 503 so the sender can retry. On shutdown, stop()
gives queued events a bounded time to finish before cancelling workers.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from src.shipwright.events.metrics import ShipwrightMetrics


logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]


class EventDispatcher:
    """Worker pool draining a bounded asyncio queue.

    Attributes:
        maxsize: Queue capacity.
        workers: Number of worker tasks.

    Example:
        >>> dispatcher = EventDispatcher(engine.handle_event, maxsize=100, workers=4)
        >>> dispatcher.start()
        >>> dispatcher.submit(event)
        True
        >>> await dispatcher.stop(timeout=30)
    """

    def __init__(
        self,
        handler: EventHandler,
        maxsize: int = 100,
        workers: int = 4,
        metrics: Optional[ShipwrightMetrics] = None,
    ):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._handler = handler
        self.maxsize = maxsize
        self.workers = workers
        self._metrics = metrics
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._accepting = False

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """Start the worker tasks on the running loop."""
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"webhook-worker-{index}")
            for index in range(self.workers)
        ]
        self._accepting = True
        logger.info(
            "Event dispatcher started",
            extra={"workers": self.workers, "queue_size": self.maxsize},
        )

    def submit(self, event: Any) -> bool:
        """Enqueue an event without waiting.

        Returns:
            False when the dispatcher is stopped or the queue is full.
        """
        if not self._accepting or self._queue is None:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Event queue full, rejecting event",
                extra={"queue_size": self.maxsize, "event_kind": getattr(event, "kind", None)},
            )
            return False
        self._report_depth()
        return True

    async def stop(self, timeout: float = 30) -> None:
        """Stop accepting events, drain the queue, then cancel workers.

        Args:
            timeout: Seconds to wait for queued events to finish.
        """
        self._accepting = False
        if self._queue is not None and self._tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Event queue did not drain before shutdown",
                    extra={"remaining": self.depth, "timeout": timeout},
                )

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Event dispatcher stopped")

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self._handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"worker": index, "event_kind": getattr(event, "kind", None)},
                )
            finally:
                self._queue.task_done()
                self._report_depth()

    def _report_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.set_queue_depth(self.depth)
