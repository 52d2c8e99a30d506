"""Persistent queue item storage using a JSON file."""

import asyncio
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from .errors import ItemNotFoundError, StorageError
from .models import EnqueueResult, ItemStatus, QueueItem, utcnow

T = TypeVar("T")


class Storage:
    """File-based queue store.

    Every operation touches a single row and is last-write-wins. The
    internal lock only keeps concurrent writers in this process from
    clobbering the file; it is not a claim on any item.
    """

    def __init__(self, data_dir: Union[str, Path] = ".contactqueue"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.items_file = self.data_dir / "items.json"
        self._lock = threading.Lock()

        # Initialize file if it doesn't exist
        if not self.items_file.exists():
            self._write_json(self.items_file, [])

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return []
        with open(file_path, "r") as f:
            return json.load(f)

    def _locked(self, fn: Callable[[List[Dict[str, Any]]], T], write: bool) -> T:
        with self._lock:
            try:
                rows = self._read_json(self.items_file)
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Cannot read queue store {self.items_file}: {e}") from e
            result = fn(rows)
            if write:
                try:
                    self._write_json(self.items_file, rows)
                except OSError as e:
                    raise StorageError(f"Cannot write queue store {self.items_file}: {e}") from e
            return result

    async def _read(self, fn: Callable[[List[Dict[str, Any]]], T]) -> T:
        return await asyncio.to_thread(self._locked, fn, False)

    async def _mutate(self, fn: Callable[[List[Dict[str, Any]]], T]) -> T:
        return await asyncio.to_thread(self._locked, fn, True)

    @staticmethod
    def _index_of(rows: List[Dict[str, Any]], item_id: str) -> int:
        for i, row in enumerate(rows):
            if row["id"] == item_id:
                return i
        raise ItemNotFoundError(item_id)

    async def enqueue(self, item: QueueItem) -> EnqueueResult:
        """Insert a new item unless its event id is already stored."""
        def insert(rows):
            for row in rows:
                if row["event_id"] == item.event_id:
                    return EnqueueResult(id=row["id"], event_id=item.event_id, duplicate=True)
            rows.append(item.model_dump(mode="json"))
            return EnqueueResult(id=item.id, event_id=item.event_id)

        return await self._mutate(insert)

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        """Get an item by ID."""
        def find(rows):
            for row in rows:
                if row["id"] == item_id:
                    return QueueItem(**row)
            return None

        return await self._read(find)

    async def list_items(self, status: Optional[ItemStatus] = None) -> List[QueueItem]:
        """Get all items, optionally filtered by status, in insertion order."""
        def select(rows):
            return [
                QueueItem(**row) for row in rows
                if status is None or row["status"] == status.value
            ]

        return await self._read(select)

    async def fetch_eligible(self, limit: int, now: Optional[datetime] = None) -> List[QueueItem]:
        """Oldest-created eligible items, at most ``limit`` of them."""
        now = now or utcnow()
        items = await self.list_items(ItemStatus.PENDING)
        eligible = [item for item in items if item.is_eligible(now)]
        eligible.sort(key=lambda item: item.created_at)
        return eligible[:limit]

    async def update_status(self, item_id: str, status: ItemStatus, **fields: Any) -> QueueItem:
        """Set an item's status together with any other fields."""
        return await self.update_data(item_id, status=status, **fields)

    async def update_data(self, item_id: str, **fields: Any) -> QueueItem:
        """Overwrite the given fields of a single item."""
        def update(rows):
            i = self._index_of(rows, item_id)
            data = QueueItem(**rows[i]).model_dump()
            data.update(fields)
            data["updated_at"] = utcnow()
            updated = QueueItem(**data)
            rows[i] = updated.model_dump(mode="json")
            return updated

        return await self._mutate(update)

    async def find_stalled(self, threshold: datetime) -> List[QueueItem]:
        """Processing items started before ``threshold`` that still have attempts left."""
        items = await self.list_items(ItemStatus.PROCESSING)
        return [
            item for item in items
            if item.processing_started_at is not None
            and item.processing_started_at < threshold
            and item.attempts < item.max_attempts
        ]

    async def find_expired_completed(self, cutoff: datetime) -> List[QueueItem]:
        """Completed items whose completion time is older than ``cutoff``."""
        items = await self.list_items(ItemStatus.COMPLETED)
        return [
            item for item in items
            if item.processing_completed_at is not None
            and item.processing_completed_at < cutoff
        ]

    async def delete(self, item_id: str) -> None:
        """Remove an item."""
        def remove(rows):
            del rows[self._index_of(rows, item_id)]

        await self._mutate(remove)

    async def count_by_status(self) -> Dict[str, int]:
        """Get item counts per status."""
        def count(rows):
            counts = {status.value: 0 for status in ItemStatus}
            for row in rows:
                status = row.get("status", ItemStatus.PENDING.value)
                if status in counts:
                    counts[status] += 1
            return counts

        return await self._read(count)
