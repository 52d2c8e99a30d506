"""Batch coordinator: the periodic entry point that drains the queue."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from .alerts import SINK_TIMEOUT, Alerter, AlertType
from .collaborators import MetricsSink
from .executor import BoundedExecutor
from .models import (
    ItemOutcome,
    ProcessorMetrics,
    RunResult,
    RunStatus,
    utcnow,
)
from .queue import ItemQueue
from .settings import Settings

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.3


class QueueProcessor:
    """Fetches eligible items and hands them to the bounded executor.

    Only one run may be active per instance. The guard is process-local; it
    does not stop a second process (or a second instance) from picking up
    the same items, so the periodic trigger must not overlap across
    processes.
    """

    def __init__(
        self,
        queue: ItemQueue,
        executor: BoundedExecutor,
        settings: Settings,
        alerter: Optional[Alerter] = None,
        metrics_sink: Optional[MetricsSink] = None,
    ):
        self.queue = queue
        self.executor = executor
        self.settings = settings
        self.alerter = alerter or Alerter()
        self.metrics_sink = metrics_sink
        self.metrics = ProcessorMetrics()

        self._running = False
        self._started_at: Optional[float] = None
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def is_processing(self) -> bool:
        return self._running

    def cancel(self) -> bool:
        """Ask the active run to stop crediting in-flight items. Returns False if idle."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        return True

    async def process_pending(
        self,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_runtime: Optional[float] = None,
    ) -> RunResult:
        """Process one batch of eligible items."""
        if batch_size is None:
            batch_size = self.settings.batch_size
        if concurrency is None:
            concurrency = self.settings.max_concurrency
        if max_runtime is None:
            max_runtime = self.settings.max_runtime

        if self._running:
            logger.warning("Queue processing already in progress")
            return RunResult(
                status=RunStatus.ALREADY_PROCESSING,
                message="Another run is already in progress",
            )

        self._running = True
        self._started_at = time.monotonic()
        self._cancel_event = asyncio.Event()
        result = RunResult(status=RunStatus.COMPLETED)

        try:
            items = await self.queue.fetch_eligible(batch_size)
            if not items:
                logger.info("No pending queue items")
                result.status = RunStatus.EMPTY
                result.message = "No pending items to process"
                return result

            logger.info(
                f"Processing queue batch of {len(items)} items "
                f"(concurrency {concurrency}, max runtime {max_runtime}s)"
            )
            report = await self.executor.run(
                items,
                concurrency=concurrency,
                max_runtime=max_runtime,
                cancel_event=self._cancel_event,
            )

            for outcome in report.outcomes:
                if outcome.success:
                    result.processed += 1
                else:
                    result.failed += 1
                    result.errors.append({"item_id": outcome.item_id, "error": outcome.error})
            result.skipped = len(report.unstarted)
            result.peak_concurrency = report.peak_in_flight
            result.runtime = time.monotonic() - self._started_at

            logger.info(
                f"Queue batch completed: {result.processed} processed, {result.failed} failed, "
                f"{result.skipped} skipped in {result.runtime:.2f}s"
            )
            self._update_metrics(result, report.outcomes)
            await self._push_metrics(result)

            if result.failed:
                await self.alerter.trigger(
                    AlertType.QUEUE_PROCESSING_ERROR,
                    error_message=f"{result.failed} of {len(report.outcomes)} items failed",
                    processed_count=result.processed,
                    failed_count=result.failed,
                )
            return result

        except Exception as e:
            logger.error(f"Queue processing failed: {e}", exc_info=True)
            result.status = RunStatus.ERROR
            result.error = str(e)
            result.runtime = time.monotonic() - self._started_at
            await self.alerter.trigger(AlertType.QUEUE_PROCESSING_ERROR, error_message=str(e))
            return result

        finally:
            self._running = False
            self._started_at = None
            self._cancel_event = None

    def _update_metrics(self, result: RunResult, outcomes: List[ItemOutcome]) -> None:
        self.metrics.total_processed += result.processed
        self.metrics.total_failed += result.failed
        self.metrics.last_processed_at = utcnow()

        if not outcomes:
            return
        avg_time = sum(o.processing_time for o in outcomes) / len(outcomes)
        if self.metrics.average_processing_time == 0:
            self.metrics.average_processing_time = avg_time
        else:
            self.metrics.average_processing_time = (
                self.metrics.average_processing_time * (1 - EMA_ALPHA) + avg_time * EMA_ALPHA
            )

    async def _push_metrics(self, result: RunResult) -> None:
        if self.metrics_sink is None:
            return
        try:
            await asyncio.wait_for(
                self.metrics_sink.record_run(result.model_copy(), self.metrics.model_copy()),
                timeout=SINK_TIMEOUT,
            )
        except Exception as e:
            logger.error(f"Failed to push run metrics: {e}")

    async def health_check(self) -> Dict[str, Any]:
        """Report processor health and queue depth."""
        try:
            stats = await self.queue.get_stats()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

        overrun = (
            self._running
            and self._started_at is not None
            and time.monotonic() - self._started_at >= self.settings.max_runtime
        )
        return {
            "status": "unhealthy" if overrun else "healthy",
            "is_processing": self._running,
            "queue_depth": stats.pending,
            "metrics": self.metrics.model_dump(mode="json"),
        }
