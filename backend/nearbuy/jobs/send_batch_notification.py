# /nearbuy/jobs/send_batch_notification.py

import time
import logging

from nearbuy.config.settings import RetryConfig
from nearbuy.jobs.base import JobDeferred, JobHandler, PermanentJobError
from nearbuy.models.domain import Lane, NotificationLogEntry, NotificationType, OutboundMessage
from nearbuy.models.queue import JobPolicy, QueueJob
from nearbuy.services.batch_aggregator import compose_digest
from nearbuy.services.outbound import OutboundSender
from nearbuy.services.security_service import EnhancedSecurityService, mask_phone
from nearbuy.services.whatsapp_service import WhatsAppAPIError
from nearbuy.utils.metrics import batches_counter

logger = logging.getLogger(__name__)


class SendBatchNotification(JobHandler):
    """
    Sends one pending NotificationBatch as a single digest message.

    The batch is always reloaded from the store first, so a job that was
    delayed (quiet hours, backoff) acts on current state and a batch that was
    already finished elsewhere is left alone.
    """
    kind = "send_batch_notification"

    def __init__(self, store, sender: OutboundSender, retry: RetryConfig, unique_for: int = 300):
        self.store = store
        self.sender = sender
        self.policy = JobPolicy(
            lane=Lane.NOTIFICATIONS,
            tries=retry.max_attempts,
            backoff=retry.backoff,
            retry_until=retry.retry_until_seconds,
            timeout=60,
            unique_for=unique_for,
        )

    @staticmethod
    def unique_key(batch_id: str) -> str:
        return f"batch_{batch_id}"

    async def handle(self, job: QueueJob) -> None:
        batch_id = job.payload["batch_id"]
        batch = await self.store.get_batch(batch_id)
        if batch is None or not batch.is_pending:
            logger.info(f"Batch {batch_id} is no longer pending, nothing to send")
            return

        if not batch.items:
            await self.store.mark_batch_skipped(batch_id, "No items in batch")
            batches_counter.labels(status="skipped").inc()
            logger.info(f"Batch {batch_id} has no items, marked skipped")
            return

        contact = await self.store.get_recipient_contact(batch.recipient_id) or {}
        phone = EnhancedSecurityService.sanitize_phone_number(contact.get("phone") or "")
        if not phone:
            await self.store.mark_batch_failed(batch_id, "Recipient phone not found")
            batches_counter.labels(status="failed").inc()
            raise PermanentJobError(f"No phone number for recipient {batch.recipient_id}")

        message = OutboundMessage(
            to=phone,
            body=compose_digest(batch.items, batch.frequency, batch.recipient_name or contact.get("name")),
            notification_type=NotificationType.BATCH_DIGEST,
            lane=job.lane,
        )

        started = time.monotonic()
        try:
            message_id = await self.sender.deliver(message)
        except JobDeferred:
            raise
        except WhatsAppAPIError as e:
            await self.store.record_batch_error(batch_id, str(e))
            if not e.retryable:
                raise PermanentJobError(str(e)) from e
            raise
        except Exception as e:
            await self.store.record_batch_error(batch_id, f"{type(e).__name__}: {e}")
            raise

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        count = batch.item_count
        await self._mark_sent(batch_id, message_id, count, duration_ms)
        await self.store.log_notification(NotificationLogEntry(
            phone=phone,
            notification_type=NotificationType.BATCH_DIGEST.value,
            status="sent",
            message_id=message_id,
            duration_ms=duration_ms,
            attempt=job.attempts + 1,
            queue=job.lane.value,
            context={"batch_id": batch_id, "items": count},
        ))
        batches_counter.labels(status="sent").inc()
        logger.info(f"Batch {batch_id} sent to {mask_phone(phone)} with {count} items")

    async def _mark_sent(self, batch_id: str, message_id: str, count: int, duration_ms: float) -> bool:
        # Items appended while the digest was in flight were not in it; they move
        # to a new pending batch with the same (already due) schedule.
        for _ in range(3):
            if await self.store.mark_batch_sent(batch_id, message_id, total_items=count, sent_count=count,
                                                failed_count=0, duration_ms=duration_ms):
                return True
            carried = await self.store.split_batch(batch_id, count)
            if carried:
                logger.info(f"Moved {carried.item_count} late items of batch {batch_id} to batch {carried.id}")
        logger.warning(f"Batch {batch_id} changed during send and was not marked sent")
        return False

    async def failed(self, job: QueueJob, error: BaseException) -> None:
        batch_id = job.payload.get("batch_id")
        # Only a still-pending batch changes; a second call is a no-op.
        if await self.store.mark_batch_failed(batch_id, f"Failed after {job.attempts} attempts: {error}"):
            batches_counter.labels(status="failed").inc()
            logger.error(f"Batch {batch_id} failed permanently: {error}")
