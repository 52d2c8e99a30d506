"""Scheduled entry points and the long-running worker loop."""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .alerts import Alerter
from .collaborators import Collaborators
from .errors import ConfigurationError
from .executor import BoundedExecutor
from .maintenance import MaintenanceJobs
from .pipeline import ItemPipeline
from .processor import QueueProcessor
from .queue import ItemQueue
from .settings import Settings
from .storage import Storage

logger = logging.getLogger(__name__)

PROCESS = "process"
MONITOR = "monitor"
RESET_STALLED = "reset-stalled"
CLEANUP = "cleanup"
OPERATIONS = (PROCESS, MONITOR, RESET_STALLED, CLEANUP)
MAINTENANCE_OPERATIONS = (MONITOR, RESET_STALLED, CLEANUP)


@dataclass
class Runtime:
    """Wired-up components for one process."""
    settings: Settings
    storage: Storage
    queue: ItemQueue
    maintenance: MaintenanceJobs
    processor: Optional[QueueProcessor] = None


def build_runtime(settings: Settings, collaborators: Optional[Collaborators] = None) -> Runtime:
    """Build the component graph. Without collaborators only maintenance is available."""
    storage = Storage(settings.data_dir)
    queue = ItemQueue(storage, settings)
    alerter = Alerter(collaborators.alerts if collaborators else None)
    maintenance = MaintenanceJobs(storage, settings, alerter)

    processor = None
    if collaborators is not None:
        pipeline = ItemPipeline(queue, collaborators, settings)
        executor = BoundedExecutor(
            pipeline,
            queue,
            item_timeout=settings.item_timeout,
            safety_margin=settings.runtime_safety_margin,
        )
        processor = QueueProcessor(queue, executor, settings, alerter, metrics_sink=collaborators.metrics)

    return Runtime(settings, storage, queue, maintenance, processor)


async def run_operations(
    runtime: Runtime,
    operations: Iterable[str],
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Run scheduled queue operations in order, capturing each result or error."""
    operations = list(operations)
    logger.info(f"Starting scheduled queue operations: {', '.join(operations)}")
    results: Dict[str, Any] = {}

    for op in operations:
        try:
            if op == PROCESS:
                if runtime.processor is None:
                    raise ConfigurationError("No collaborators configured; cannot process items")
                result = await runtime.processor.process_pending(batch_size=limit)
                results[op] = result.model_dump(mode="json")
            elif op == MONITOR:
                report = await runtime.maintenance.check_queue_status()
                results[op] = report.model_dump(mode="json")
            elif op == RESET_STALLED:
                results[op] = await runtime.maintenance.reset_stalled()
            elif op == CLEANUP:
                results[op] = await runtime.maintenance.cleanup_completed()
            else:
                logger.warning(f"Unknown queue operation: {op}")
        except Exception as e:
            logger.error(f"Queue operation {op} failed: {e}", exc_info=True)
            results[op] = {"error": str(e)}

    logger.info("Scheduled queue operations completed")
    return results


class Worker:
    """Processes the queue every ``interval`` seconds and runs maintenance
    every ``maintenance_interval`` seconds until stopped."""

    def __init__(self, runtime: Runtime, interval: float = 60.0, maintenance_interval: float = 300.0):
        if runtime.processor is None:
            raise ConfigurationError("Worker needs collaborators to process items")
        self.runtime = runtime
        self.interval = interval
        self.maintenance_interval = maintenance_interval
        self.running = False
        self._stop: Optional[asyncio.Event] = None

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal gracefully."""
        logger.info("Shutdown requested, finishing current run")
        self.stop()

    def stop(self) -> None:
        self.running = False
        self.runtime.processor.cancel()
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> None:
        """Run the worker loop."""
        self._stop = asyncio.Event()
        self.running = True
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} unavailable")

        logger.info(f"Worker started (interval {self.interval}s, maintenance every {self.maintenance_interval}s)")
        last_maintenance: Optional[float] = None

        try:
            while self.running:
                if last_maintenance is None or time.monotonic() - last_maintenance >= self.maintenance_interval:
                    await run_operations(self.runtime, MAINTENANCE_OPERATIONS)
                    last_maintenance = time.monotonic()

                await run_operations(self.runtime, [PROCESS])

                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
            logger.info("Worker stopped")
