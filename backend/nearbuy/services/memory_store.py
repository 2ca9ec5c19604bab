# /nearbuy/services/memory_store.py

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from nearbuy.models.domain import (
    BatchStatus,
    DeliveryError,
    NotificationBatch,
    NotificationFrequency,
    NotificationItem,
    NotificationLogEntry,
    utcnow,
)

# In-process stand-in for DatabaseService with the same method surface and the
# same pending-only transition rules. Used by the "memory" store backend.


class InMemoryStore:
    def __init__(self):
        self.batches: Dict[str, NotificationBatch] = {}
        self.recipients: Dict[str, Dict[str, Any]] = {}
        self.notification_logs: List[NotificationLogEntry] = []
        self._lock = asyncio.Lock()

    async def create_indexes(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True

    async def _transition(self, batch_id: str, changes: Dict[str, Any], failed_increment: int = 0,
                          item_count: Optional[int] = None) -> bool:
        async with self._lock:
            batch = self.batches.get(batch_id)
            if not batch or batch.status != BatchStatus.PENDING:
                return False
            if item_count is not None and len(batch.items) != item_count:
                return False
            changes = {**changes, "updated_at": utcnow()}
            if failed_increment:
                changes["failed_count"] = batch.failed_count + failed_increment
            self.batches[batch_id] = batch.model_copy(update=changes)
            return True

    # ---- batches ----

    async def create_batch(self, batch: NotificationBatch) -> NotificationBatch:
        async with self._lock:
            stored = batch.model_copy(update={"id": uuid.uuid4().hex})
            self.batches[stored.id] = stored
            return stored

    async def get_batch(self, batch_id: str) -> Optional[NotificationBatch]:
        return self.batches.get(batch_id)

    async def find_open_batch(self, recipient_id: str, frequency: NotificationFrequency,
                              max_items: int, opened_after: datetime) -> Optional[NotificationBatch]:
        candidates = [
            b for b in self.batches.values()
            if b.recipient_id == recipient_id and b.frequency == frequency
            and b.status == BatchStatus.PENDING and b.created_at > opened_after
            and len(b.items) < max_items
        ]
        return max(candidates, key=lambda b: b.created_at, default=None)

    async def append_item(self, batch_id: str, item: NotificationItem, max_items: int) -> Optional[NotificationBatch]:
        async with self._lock:
            batch = self.batches.get(batch_id)
            if not batch or batch.status != BatchStatus.PENDING or len(batch.items) >= max_items:
                return None
            updated = batch.model_copy(update={"items": batch.items + [item], "updated_at": utcnow()})
            self.batches[batch_id] = updated
            return updated

    async def find_due_batches(self, now: datetime, limit: int = 100) -> List[NotificationBatch]:
        due = [b for b in self.batches.values() if b.status == BatchStatus.PENDING and b.scheduled_for <= now]
        return sorted(due, key=lambda b: b.scheduled_for)[:limit]

    async def mark_batch_sent(self, batch_id: str, message_id: Optional[str], total_items: int,
                              sent_count: int, failed_count: int, duration_ms: float) -> bool:
        return await self._transition(batch_id, {
            "status": BatchStatus.SENT,
            "sent_at": utcnow(),
            "message_id": message_id,
            "total_items": total_items,
            "sent_count": sent_count,
            "failed_count": failed_count,
            "duration_ms": duration_ms,
            "error": None,
        }, item_count=total_items)

    async def split_batch(self, batch_id: str, keep: int) -> Optional[NotificationBatch]:
        async with self._lock:
            batch = self.batches.get(batch_id)
            if not batch or batch.status != BatchStatus.PENDING or len(batch.items) <= keep:
                return None
            now = utcnow()
            self.batches[batch_id] = batch.model_copy(update={"items": batch.items[:keep], "updated_at": now})
            remainder = batch.model_copy(update={
                "id": uuid.uuid4().hex, "items": batch.items[keep:], "created_at": now, "updated_at": now,
                "failed_count": 0, "error": None,
            })
            self.batches[remainder.id] = remainder
            return remainder

    async def mark_batch_skipped(self, batch_id: str, reason: str) -> bool:
        return await self._transition(batch_id, {"status": BatchStatus.SKIPPED, "error": reason})

    async def mark_batch_failed(self, batch_id: str, error: str) -> bool:
        return await self._transition(batch_id, {"status": BatchStatus.FAILED, "error": error})

    async def record_batch_error(self, batch_id: str, error: str) -> bool:
        return await self._transition(batch_id, {"error": error}, failed_increment=1)

    # ---- recipients ----

    async def get_recipient_contact(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        return self.recipients.get(recipient_id)

    async def upsert_recipient(self, recipient_id: str, phone: Optional[str], name: Optional[str] = None,
                               frequency: NotificationFrequency = NotificationFrequency.TWICE_DAILY) -> None:
        self.recipients[recipient_id] = {
            "recipient_id": recipient_id, "phone": phone, "name": name,
            "notification_frequency": frequency.value,
        }

    # ---- notification log ----

    async def log_notification(self, entry: NotificationLogEntry) -> None:
        self.notification_logs.append(entry)

    async def log_notification_once(self, entry: NotificationLogEntry) -> bool:
        async with self._lock:
            if any(e.job_id == entry.job_id and e.status == entry.status for e in self.notification_logs):
                return False
            self.notification_logs.append(entry)
            return True

    async def update_status(self, message_id: str, status: str, errors: Optional[List[DeliveryError]] = None) -> bool:
        matched = False
        for index, entry in enumerate(self.notification_logs):
            if message_id and entry.message_id == message_id:
                changes: Dict[str, Any] = {"delivery_status": status}
                if errors:
                    changes["delivery_errors"] = list(errors)
                self.notification_logs[index] = entry.model_copy(update=changes)
                matched = True
        return matched
