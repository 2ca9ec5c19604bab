# /nearbuy/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from nearbuy.models.domain import (
    BatchStatus,
    DeliveryError,
    NotificationBatch,
    NotificationFrequency,
    NotificationItem,
    NotificationLogEntry,
)
from nearbuy.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Status changes only ever leave "pending"; every transition below filters on it.
PENDING_ONLY = {"status": BatchStatus.PENDING.value}


def batch_to_document(batch: NotificationBatch) -> Dict[str, Any]:
    document = batch.model_dump(exclude={"id"})
    document["status"] = batch.status.value
    document["frequency"] = batch.frequency.value
    return document


def document_to_batch(document: Optional[Dict[str, Any]]) -> Optional[NotificationBatch]:
    if not document:
        return None
    document = dict(document)
    document["id"] = str(document.pop("_id"))
    return NotificationBatch.model_validate(document)


class DatabaseService:
    """
    Durable state for the notification pipeline: notification batches,
    recipient contacts and the outbound notification log.
    """

    def __init__(self, mongo_uri: str, max_pool_size: int = 10, min_pool_size: int = 1, tls: bool = False):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=max_pool_size,
                minPoolSize=min_pool_size,
                tls=tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except PyMongoError as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    def _object_id(self, batch_id: str) -> Optional[ObjectId]:
        if not batch_id or not ObjectId.is_valid(batch_id):
            return None
        return ObjectId(batch_id)

    async def _transition(self, operation: str, batch_id: str, changes: Dict[str, Any],
                          inc: Optional[Dict[str, int]] = None, item_count: Optional[int] = None) -> bool:
        """Applies an update only while the batch is still pending (and, if given, holds item_count items)."""
        oid = self._object_id(batch_id)
        if oid is None:
            return False
        update: Dict[str, Any] = {"$set": {**changes, "updated_at": self._now_utc()}}
        if inc:
            update["$inc"] = inc
        query: Dict[str, Any] = {"_id": oid, **PENDING_ONLY}
        if item_count is not None:
            query["items"] = {"$size": item_count}
        result = await self.db.notification_batches.update_one(query, update)
        database_operations_counter.labels(operation=operation, status="success" if result.modified_count else "noop").inc()
        return result.modified_count == 1

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("notification_batches", [("status", 1), ("scheduled_for", 1)], {}),
            ("notification_batches", [("recipient_id", 1), ("frequency", 1), ("status", 1), ("created_at", -1)], {}),
            ("recipients", [("recipient_id", 1)], {"unique": True}),
            ("notification_logs", [("message_id", 1)], {"sparse": True}),
            ("notification_logs", [("phone", 1), ("created_at", -1)], {}),
            ("notification_logs", [("job_id", 1), ("status", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except PyMongoError as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Batch Operations ====================

    async def create_batch(self, batch: NotificationBatch) -> NotificationBatch:
        result = await self.db.notification_batches.insert_one(batch_to_document(batch))
        database_operations_counter.labels(operation="create_batch", status="success").inc()
        return batch.model_copy(update={"id": str(result.inserted_id)})

    async def get_batch(self, batch_id: str) -> Optional[NotificationBatch]:
        oid = self._object_id(batch_id)
        if oid is None:
            return None
        return document_to_batch(await self.db.notification_batches.find_one({"_id": oid}))

    async def find_open_batch(self, recipient_id: str, frequency: NotificationFrequency,
                              max_items: int, opened_after: datetime) -> Optional[NotificationBatch]:
        """Latest pending batch for the recipient that still has room and is young enough."""
        document = await self.db.notification_batches.find_one(
            {
                "recipient_id": recipient_id,
                "frequency": frequency.value,
                **PENDING_ONLY,
                "created_at": {"$gt": opened_after},
                f"items.{max_items - 1}": {"$exists": False},
            },
            sort=[("created_at", -1)],
        )
        return document_to_batch(document)

    async def append_item(self, batch_id: str, item: NotificationItem, max_items: int) -> Optional[NotificationBatch]:
        """Pushes an item if the batch is still pending and below max_items; returns the updated batch."""
        oid = self._object_id(batch_id)
        if oid is None:
            return None
        document = await self.db.notification_batches.find_one_and_update(
            {"_id": oid, **PENDING_ONLY, f"items.{max_items - 1}": {"$exists": False}},
            {"$push": {"items": item.model_dump()}, "$set": {"updated_at": self._now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return document_to_batch(document)

    async def find_due_batches(self, now: datetime, limit: int = 100) -> List[NotificationBatch]:
        cursor = self.db.notification_batches.find(
            {**PENDING_ONLY, "scheduled_for": {"$lte": now}}
        ).sort("scheduled_for", 1).limit(limit)
        return [document_to_batch(doc) for doc in await cursor.to_list(length=limit)]

    async def mark_batch_sent(self, batch_id: str, message_id: Optional[str], total_items: int,
                              sent_count: int, failed_count: int, duration_ms: float) -> bool:
        return await self._transition("mark_batch_sent", batch_id, {
            "status": BatchStatus.SENT.value,
            "sent_at": self._now_utc(),
            "message_id": message_id,
            "total_items": total_items,
            "sent_count": sent_count,
            "failed_count": failed_count,
            "duration_ms": duration_ms,
            "error": None,
        }, item_count=total_items)

    async def split_batch(self, batch_id: str, keep: int) -> Optional[NotificationBatch]:
        """
        Truncates a pending batch to its first `keep` items and moves the rest
        into a new pending batch with the same schedule. Returns the new batch,
        or None if the batch changed underneath or has nothing beyond `keep`.
        """
        oid = self._object_id(batch_id)
        if oid is None:
            return None
        batch = document_to_batch(await self.db.notification_batches.find_one({"_id": oid, **PENDING_ONLY}))
        if batch is None or len(batch.items) <= keep:
            return None

        now = self._now_utc()
        result = await self.db.notification_batches.update_one(
            {"_id": oid, **PENDING_ONLY, "items": {"$size": len(batch.items)}},
            {"$push": {"items": {"$each": [], "$slice": keep}}, "$set": {"updated_at": now}},
        )
        if result.modified_count != 1:
            database_operations_counter.labels(operation="split_batch", status="noop").inc()
            return None

        database_operations_counter.labels(operation="split_batch", status="success").inc()
        return await self.create_batch(batch.model_copy(update={
            "id": None, "items": batch.items[keep:], "created_at": now, "updated_at": now,
            "failed_count": 0, "error": None,
        }))

    async def mark_batch_skipped(self, batch_id: str, reason: str) -> bool:
        return await self._transition("mark_batch_skipped", batch_id, {
            "status": BatchStatus.SKIPPED.value, "error": reason,
        })

    async def mark_batch_failed(self, batch_id: str, error: str) -> bool:
        return await self._transition("mark_batch_failed", batch_id, {
            "status": BatchStatus.FAILED.value, "error": error,
        })

    async def record_batch_error(self, batch_id: str, error: str) -> bool:
        """Retry bookkeeping: keeps the batch pending, stores the error and counts the failure."""
        return await self._transition("record_batch_error", batch_id, {"error": error}, inc={"failed_count": 1})

    # ==================== Recipient Operations ====================

    async def get_recipient_contact(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.recipients.find_one({"recipient_id": recipient_id}, {"_id": 0})

    async def upsert_recipient(self, recipient_id: str, phone: Optional[str], name: Optional[str] = None,
                               frequency: NotificationFrequency = NotificationFrequency.TWICE_DAILY) -> None:
        await self.db.recipients.update_one(
            {"recipient_id": recipient_id},
            {"$set": {"phone": phone, "name": name, "notification_frequency": frequency.value, "updated_at": self._now_utc()}},
            upsert=True,
        )

    # ==================== Notification Log ====================

    async def log_notification(self, entry: NotificationLogEntry) -> None:
        await self.db.notification_logs.insert_one(entry.model_dump())

    async def log_notification_once(self, entry: NotificationLogEntry) -> bool:
        """Inserts the entry unless one with the same job_id and status exists. Returns True if inserted."""
        result = await self.db.notification_logs.update_one(
            {"job_id": entry.job_id, "status": entry.status},
            {"$setOnInsert": entry.model_dump()},
            upsert=True,
        )
        return result.upserted_id is not None

    async def update_status(self, message_id: str, status: str, errors: Optional[List[DeliveryError]] = None) -> bool:
        """Applies a delivery status webhook to the matching notification log entry."""
        if not message_id:
            return False
        changes: Dict[str, Any] = {"delivery_status": status, f"delivery_timestamps.{status}": self._now_utc()}
        if errors:
            changes["delivery_errors"] = [e.model_dump() for e in errors]
        result = await self.db.notification_logs.update_one({"message_id": message_id}, {"$set": changes})
        return result.matched_count > 0
