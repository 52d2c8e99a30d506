"""Queue item lifecycle operations."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from .errors import is_retryable
from .models import (
    EnqueueResult,
    ItemStatus,
    QueueItem,
    QueueStats,
    ValidationFlags,
    utcnow,
)
from .settings import Settings
from .storage import Storage

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 255


def compute_backoff(attempts: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait before the next attempt: base * 2^attempts, capped."""
    return min(base_delay * (2 ** attempts), max_delay)


class ItemQueue:
    """Manages queue item state transitions."""

    def __init__(self, storage: Storage, settings: Settings):
        self.storage = storage
        self.settings = settings

    async def enqueue(
        self,
        event_id: str,
        subject_id: Optional[str],
        client_id: str,
        flags: Optional[ValidationFlags] = None,
        event_data: Optional[Dict[str, Any]] = None,
        contact_data: Optional[Dict[str, Any]] = None,
    ) -> EnqueueResult:
        """Add a change event to the queue. Duplicate event ids are rejected."""
        item = QueueItem(
            event_id=event_id,
            subject_id=subject_id,
            client_id=client_id,
            flags=flags or ValidationFlags(),
            event_data=event_data or {},
            contact_data=contact_data,
            max_attempts=self.settings.max_retries,
        )
        result = await self.storage.enqueue(item)
        if result.duplicate:
            logger.debug(f"Event already queued: {event_id}")
        else:
            logger.info(f"Event {event_id} enqueued as {result.id} (client {client_id})")
        return result

    async def fetch_eligible(self, limit: int) -> List[QueueItem]:
        """Get up to ``limit`` items ready to process, oldest first."""
        return await self.storage.fetch_eligible(limit)

    async def mark_processing(self, item: QueueItem) -> QueueItem:
        """Mark an item as currently processing. Not a lock."""
        return await self.storage.update_status(
            item.id,
            ItemStatus.PROCESSING,
            processing_started_at=utcnow(),
        )

    async def cache_contact_data(self, item: QueueItem, contact_data: Dict[str, Any]) -> QueueItem:
        """Keep fetched contact context on the item for later attempts."""
        return await self.storage.update_data(item.id, contact_data=contact_data)

    async def mark_completed(
        self,
        item: QueueItem,
        validation_results: Dict[str, Any],
        submission_response: Dict[str, Any],
        warning: Optional[str] = None,
    ) -> QueueItem:
        """Mark an item as successfully completed with its outcome payload."""
        return await self.storage.update_status(
            item.id,
            ItemStatus.COMPLETED,
            processing_completed_at=utcnow(),
            validation_results=validation_results,
            submission_response=submission_response,
            warning=warning,
            next_retry_at=None,
            error_message=None,
            error_details=None,
        )

    async def mark_failed(self, item: QueueItem, error: BaseException) -> QueueItem:
        """Record a failed attempt and schedule a retry if possible."""
        current = await self.storage.get_item(item.id) or item
        attempts = min(current.attempts + 1, current.max_attempts)
        retryable = is_retryable(error)
        now = utcnow()

        details = {
            "name": type(error).__name__,
            "message": str(error),
            "retryable": retryable,
            "timestamp": now.isoformat(),
        }
        message = (str(error) or type(error).__name__)[:ERROR_MESSAGE_LIMIT]

        if retryable and attempts < current.max_attempts:
            delay = compute_backoff(
                attempts, self.settings.retry_base_delay, self.settings.retry_max_delay
            )
            updated = await self.storage.update_status(
                item.id,
                ItemStatus.PENDING,
                attempts=attempts,
                next_retry_at=now + timedelta(seconds=delay),
                error_message=message,
                error_details=details,
            )
            logger.warning(
                f"Item {item.id} failed (attempt {attempts}/{current.max_attempts}), "
                f"retrying in {delay:.0f}s: {message}"
            )
        else:
            updated = await self.storage.update_status(
                item.id,
                ItemStatus.FAILED,
                attempts=attempts,
                next_retry_at=None,
                error_message=message,
                error_details=details,
            )
            reason = "non-retryable error" if not retryable else "max attempts reached"
            logger.error(f"Item {item.id} failed permanently ({reason}): {message}")
        return updated

    async def retry_item(self, item_id: str) -> Optional[QueueItem]:
        """Put a failed item back in the queue with a fresh attempt budget."""
        if await self.storage.get_item(item_id) is None:
            return None

        updated = await self.storage.update_status(
            item_id,
            ItemStatus.PENDING,
            attempts=0,
            next_retry_at=None,
            processing_started_at=None,
            error_message=None,
            error_details=None,
        )
        logger.info(f"Queue item {item_id} queued for retry")
        return updated

    async def list_failed(self, page: int = 1, limit: int = 20) -> Tuple[List[QueueItem], int]:
        """Failed items, newest first, one page at a time. Returns (items, total)."""
        failed = await self.storage.list_items(ItemStatus.FAILED)
        failed.sort(key=lambda item: item.created_at, reverse=True)
        offset = (max(page, 1) - 1) * limit
        return failed[offset:offset + limit], len(failed)

    async def get_items_by_status(self, status: ItemStatus) -> List[QueueItem]:
        """Get all items in a specific state."""
        return await self.storage.list_items(status)

    async def get_all_items(self) -> List[QueueItem]:
        """Get all items."""
        return await self.storage.list_items()

    async def get_stats(self) -> QueueStats:
        """Get item counts per status."""
        counts = await self.storage.count_by_status()
        return QueueStats(total=sum(counts.values()), **counts)
