"""Periodic maintenance: stalled-item recovery, retention cleanup, health alerts."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .alerts import Alerter, AlertType
from .models import ItemStatus, QueueStatusReport, utcnow
from .settings import Settings
from .storage import Storage

logger = logging.getLogger(__name__)


class MaintenanceJobs:
    """Jobs that run on their own schedule, independent of batch processing."""

    def __init__(
        self,
        storage: Storage,
        settings: Settings,
        alerter: Optional[Alerter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.settings = settings
        self.alerter = alerter or Alerter()
        self.clock = clock

    async def reset_stalled(self) -> Dict[str, int]:
        """Return items stuck in processing to the queue.

        An item counts as stalled once it has been processing longer than
        ``stalled_threshold_minutes``. Each reset consumes one attempt. Items
        already at their attempt limit are left alone for manual inspection.
        """
        now = self.clock()
        threshold = now - timedelta(minutes=self.settings.stalled_threshold_minutes)
        stalled = await self.storage.find_stalled(threshold)

        reset_count = 0
        for item in stalled:
            try:
                await self.storage.update_status(
                    item.id,
                    ItemStatus.PENDING,
                    processing_started_at=None,
                    next_retry_at=now,
                    attempts=item.attempts + 1,
                )
                reset_count += 1
            except Exception as e:
                logger.error(f"Failed to reset stalled item {item.id}: {e}")

        if reset_count:
            logger.warning(f"Reset {reset_count} stalled queue items")
        else:
            logger.info("No stalled queue items")
        return {"reset_count": reset_count, "found": len(stalled)}

    async def cleanup_completed(self) -> Dict[str, int]:
        """Delete completed items older than the retention window."""
        cutoff = self.clock() - timedelta(days=self.settings.completed_retention_days)
        expired = await self.storage.find_expired_completed(cutoff)

        deleted_count = 0
        for item in expired:
            try:
                await self.storage.delete(item.id)
                deleted_count += 1
            except Exception as e:
                logger.error(f"Failed to delete old item {item.id}: {e}")

        logger.info(f"Cleaned up {deleted_count} old completed queue items")
        return {"deleted_count": deleted_count, "found": len(expired)}

    async def check_queue_status(self) -> QueueStatusReport:
        """Compute queue health and raise backlog / stall alerts."""
        now = self.clock()
        items = await self.storage.list_items()
        report = QueueStatusReport(timestamp=now)

        for item in items:
            setattr(report, item.status.value, getattr(report, item.status.value) + 1)
            if item.status == ItemStatus.PENDING and item.attempts >= item.max_attempts:
                # Reset from a stall on its last attempt; never picked up again.
                report.exhausted += 1
            elif item.status == ItemStatus.PENDING:
                age = (now - item.created_at).total_seconds()
                report.oldest_pending_age = max(report.oldest_pending_age, age)
            elif item.status == ItemStatus.PROCESSING and item.processing_started_at:
                age = (now - item.processing_started_at).total_seconds()
                report.oldest_processing_age = max(report.oldest_processing_age, age)
        report.total = len(items)

        backlog = report.pending - report.exhausted
        if backlog > self.settings.pending_threshold:
            report.alerts.append(AlertType.QUEUE_BACKED_UP.value)
            await self.alerter.trigger(
                AlertType.QUEUE_BACKED_UP,
                pending_count=backlog,
                threshold=self.settings.pending_threshold,
            )

        stalled_seconds = self.settings.stalled_alert_hours * 3600
        if report.processing and report.oldest_processing_age > stalled_seconds:
            report.alerts.append(AlertType.QUEUE_STALLED.value)
            await self.alerter.trigger(
                AlertType.QUEUE_STALLED,
                processing_count=report.processing,
                oldest_hours=round(report.oldest_processing_age / 3600, 1),
            )

        if report.exhausted:
            logger.warning(f"Queue has {report.exhausted} pending items with no attempts left")
        if report.failed:
            logger.warning(f"Queue has {report.failed} failed items")

        logger.info(
            f"Queue status: {report.pending} pending, {report.processing} processing, "
            f"{report.completed} completed, {report.failed} failed"
        )
        return report
