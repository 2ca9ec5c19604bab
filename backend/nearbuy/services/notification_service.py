# /nearbuy/services/notification_service.py

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from nearbuy.config.settings import BatchConfig
from nearbuy.jobs.base import enqueue_job
from nearbuy.jobs.send_batch_notification import SendBatchNotification
from nearbuy.jobs.send_whatsapp_message import SendWhatsAppMessage
from nearbuy.models.domain import (
    Lane,
    NotificationBatch,
    NotificationFrequency,
    NotificationItem,
    NotificationType,
    utcnow,
)
from nearbuy.models.queue import QueueJob
from nearbuy.services.batch_aggregator import next_delivery_time
from nearbuy.services.security_service import mask_phone

logger = logging.getLogger(__name__)

LANE_BY_TYPE: Dict[NotificationType, Lane] = {
    NotificationType.FLASH_DEAL: Lane.FLASH_DEALS,
    NotificationType.FLASH_DEAL_ACTIVATION: Lane.FLASH_DEALS,
    NotificationType.FLASH_DEAL_COUPON: Lane.FLASH_DEALS,
    NotificationType.FISH_ALERT: Lane.FISH_ALERTS,
    NotificationType.FISH_ARRIVAL_IMMINENT: Lane.FISH_ALERTS,
    NotificationType.JOB_NOTIFICATION: Lane.JOB_NOTIFICATIONS,
    NotificationType.JOB_ACCEPTED: Lane.JOB_NOTIFICATIONS,
    NotificationType.PRODUCT_REQUEST: Lane.PRODUCT_REQUESTS,
    NotificationType.OFFER: Lane.OFFERS,
    NotificationType.BATCH_DIGEST: Lane.NOTIFICATIONS,
    NotificationType.AGREEMENT: Lane.NOTIFICATIONS,
}


def lane_for(notification_type: NotificationType) -> Lane:
    return LANE_BY_TYPE.get(notification_type, Lane.DEFAULT)


class NotificationService:
    """Entry point for business flows that want a single WhatsApp message delivered."""

    def __init__(self, queue, handler: SendWhatsAppMessage):
        self.queue = queue
        self.handler = handler

    async def notify(self, phone: str, body: str,
                     notification_type: NotificationType = NotificationType.GENERAL,
                     message_type: str = "text", extra: Optional[Dict[str, Any]] = None,
                     context: Optional[Dict[str, Any]] = None, lane: Optional[Lane] = None,
                     urgent: bool = False, unique_key: Optional[str] = None,
                     delay: float = 0) -> Optional[QueueJob]:
        payload = {
            "phone": phone,
            "body": body,
            "message_type": message_type,
            "extra": extra or {},
            "notification_type": notification_type.value,
            "urgent": urgent,
            "context": context or {},
        }
        job = await enqueue_job(self.queue, self.handler, payload, unique_key=unique_key,
                                lane=lane or lane_for(notification_type), delay=delay)
        if job:
            logger.info(f"Queued {notification_type.value} for {mask_phone(phone)} on {job.lane.value}")
        return job

    async def flash_deal(self, phone: str, body: str, **kwargs) -> Optional[QueueJob]:
        return await self.notify(phone, body, NotificationType.FLASH_DEAL, **kwargs)

    async def fish_alert(self, phone: str, body: str, **kwargs) -> Optional[QueueJob]:
        return await self.notify(phone, body, NotificationType.FISH_ALERT, **kwargs)

    async def job_notification(self, phone: str, body: str, **kwargs) -> Optional[QueueJob]:
        return await self.notify(phone, body, NotificationType.JOB_NOTIFICATION, **kwargs)

    async def product_request(self, phone: str, body: str, **kwargs) -> Optional[QueueJob]:
        return await self.notify(phone, body, NotificationType.PRODUCT_REQUEST, **kwargs)

    async def offer(self, phone: str, body: str, **kwargs) -> Optional[QueueJob]:
        return await self.notify(phone, body, NotificationType.OFFER, **kwargs)

    async def urgent(self, phone: str, body: str,
                     notification_type: NotificationType = NotificationType.URGENT,
                     **kwargs) -> Optional[QueueJob]:
        """Sends regardless of quiet hours."""
        return await self.notify(phone, body, notification_type, urgent=True, **kwargs)


class NotificationBatcher:
    """
    Collects notification items into per-recipient batches and hands due
    batches to the queue as send_batch_notification jobs.
    """

    def __init__(self, store, queue, handler: SendBatchNotification, config: BatchConfig,
                 tz: ZoneInfo, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.queue = queue
        self.handler = handler
        self.config = config
        self.tz = tz
        self.clock = clock

    async def _frequency_for(self, recipient_id: str) -> NotificationFrequency:
        contact = await self.store.get_recipient_contact(recipient_id) or {}
        try:
            return NotificationFrequency(contact.get("notification_frequency") or NotificationFrequency.TWICE_DAILY)
        except ValueError:
            return NotificationFrequency.TWICE_DAILY

    async def add_item(self, recipient_id: str, item: NotificationItem,
                       frequency: Optional[NotificationFrequency] = None,
                       recipient_name: Optional[str] = None) -> NotificationBatch:
        """Appends the item to the recipient's open batch, opening a new one when needed."""
        now = self.clock()
        frequency = frequency or await self._frequency_for(recipient_id)
        opened_after = now - timedelta(hours=self.config.max_batch_age_hours)

        batch = None
        open_batch = await self.store.find_open_batch(recipient_id, frequency, self.config.max_items_per_batch, opened_after)
        if open_batch:
            # May lose a race with a concurrent append that filled the batch.
            batch = await self.store.append_item(open_batch.id, item, self.config.max_items_per_batch)

        if batch is None:
            batch = await self.store.create_batch(NotificationBatch(
                recipient_id=recipient_id,
                recipient_name=recipient_name,
                items=[item],
                frequency=frequency,
                scheduled_for=next_delivery_time(frequency, now, self.tz, self.config),
                created_at=now,
                updated_at=now,
            ))
            logger.info(f"Opened {frequency.value} batch {batch.id} for recipient {recipient_id}")

        if frequency == NotificationFrequency.IMMEDIATE:
            await self.enqueue_batch(batch)
        return batch

    async def enqueue_batch(self, batch: NotificationBatch) -> Optional[QueueJob]:
        return await enqueue_job(self.queue, self.handler, {"batch_id": batch.id},
                                 unique_key=SendBatchNotification.unique_key(batch.id))

    async def dispatch_ready(self, now: Optional[datetime] = None, limit: Optional[int] = None,
                             dry_run: bool = False) -> List[NotificationBatch]:
        """
        Enqueues a send job for every pending batch that is due. Returns the
        batches that were enqueued, or in dry-run mode the due candidates.
        """
        now = now or self.clock()
        due = await self.store.find_due_batches(now, limit or self.config.dispatch_limit)
        if dry_run:
            logger.info(f"Dry run: {len(due)} batches are due")
            return due

        dispatched = []
        for batch in due:
            if not batch.items:
                await self.store.mark_batch_skipped(batch.id, "No items in batch")
                continue
            if await self.enqueue_batch(batch):
                dispatched.append(batch)
        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} of {len(due)} due batches")
        return dispatched
