"""Concurrency-capped, deadline-aware execution of a batch of queue items."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .errors import ItemCancelledError, ItemTimeoutError
from .models import ItemOutcome, QueueItem
from .pipeline import ItemPipeline
from .queue import ItemQueue

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    outcomes: List[ItemOutcome] = field(default_factory=list)
    unstarted: List[QueueItem] = field(default_factory=list)
    peak_in_flight: int = 0


class BoundedExecutor:
    """Runs items through the pipeline with at most ``concurrency`` in flight.

    Once ``max_runtime - safety_margin`` seconds have elapsed no new item is
    started; items already running finish or time out on their own, and
    unstarted items stay pending for the next run.

    A timed-out or cancelled item is abandoned: its task is cancelled but an
    external call it already issued may still land, so collaborators must
    tolerate repeated or late writes.
    """

    def __init__(
        self,
        pipeline: ItemPipeline,
        queue: ItemQueue,
        item_timeout: float = 10.0,
        safety_margin: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pipeline = pipeline
        self.queue = queue
        self.item_timeout = item_timeout
        self.safety_margin = safety_margin
        self.clock = clock

    async def run(
        self,
        items: List[QueueItem],
        concurrency: int,
        max_runtime: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionReport:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        report = ExecutionReport()
        start = self.clock()
        waiting: Deque[QueueItem] = deque(items)
        in_flight: Dict[asyncio.Task, QueueItem] = {}

        while waiting or in_flight:
            elapsed = self.clock() - start
            if elapsed >= max_runtime - self.safety_margin:
                logger.warning(
                    f"Approaching max runtime ({elapsed:.1f}s of {max_runtime:.1f}s), "
                    f"not starting {len(waiting)} remaining items, {len(in_flight)} still in flight"
                )
                break

            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Run cancelled, not starting {len(waiting)} remaining items")
                break

            while waiting and len(in_flight) < concurrency:
                item = waiting.popleft()
                timeout = min(self.item_timeout, max_runtime - elapsed)
                task = asyncio.create_task(
                    self._run_item(item, timeout, cancel_event),
                    name=f"queue-item:{item.id}",
                )
                in_flight[task] = item
                report.peak_in_flight = max(report.peak_in_flight, len(in_flight))

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                report.outcomes.append(self._collect(task, in_flight.pop(task)))

        if in_flight:
            done, _ = await asyncio.wait(in_flight)
            for task in done:
                report.outcomes.append(self._collect(task, in_flight.pop(task)))

        report.unstarted = list(waiting)
        return report

    async def _run_item(
        self,
        item: QueueItem,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> ItemOutcome:
        started = self.clock()
        work = asyncio.ensure_future(self.pipeline.process(item))
        waiters = {work}
        cancelled = None
        if cancel_event is not None:
            cancelled = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancelled is not None:
                cancelled.cancel()

        if work in done:
            return work.result()

        work.cancel()
        if cancelled is not None and cancelled in done:
            error = ItemCancelledError()
        else:
            error = ItemTimeoutError("Item processing", timeout)
        logger.warning(f"Abandoning queue item {item.id}: {error}")

        try:
            await self.queue.mark_failed(item, error)
        except Exception as e:
            logger.error(f"Could not record abandonment of item {item.id}: {e}", exc_info=True)

        return ItemOutcome(
            item_id=item.id,
            success=False,
            error=str(error),
            processing_time=self.clock() - started,
        )

    @staticmethod
    def _collect(task: asyncio.Task, item: QueueItem) -> ItemOutcome:
        if task.cancelled():
            return ItemOutcome(item_id=item.id, success=False, error="Processing task cancelled")
        exc = task.exception()
        if exc is not None:
            logger.error(f"Unexpected error processing item {item.id}: {exc}", exc_info=exc)
            return ItemOutcome(item_id=item.id, success=False, error=str(exc) or type(exc).__name__)
        return task.result()
