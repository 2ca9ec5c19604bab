# /nearbuy/jobs/send_whatsapp_message.py

import time
import logging
from typing import Any, Dict

from nearbuy.config.settings import RetryConfig
from nearbuy.jobs.base import JobDeferred, JobHandler, PermanentJobError
from nearbuy.models.domain import Lane, NotificationLogEntry, NotificationType, OutboundMessage
from nearbuy.models.queue import JobPolicy, QueueJob
from nearbuy.services.outbound import OutboundSender
from nearbuy.services.security_service import EnhancedSecurityService, mask_phone
from nearbuy.services.whatsapp_service import WhatsAppAPIError

logger = logging.getLogger(__name__)


class SendWhatsAppMessage(JobHandler):
    """Delivers a single notification and records every attempt in the notification log."""
    kind = "send_whatsapp_message"

    def __init__(self, store, sender: OutboundSender, retry: RetryConfig, unique_for: int = 300):
        self.store = store
        self.sender = sender
        self.policy = JobPolicy(
            lane=Lane.DEFAULT,
            tries=retry.max_attempts,
            backoff=retry.backoff,
            retry_until=retry.retry_until_seconds,
            timeout=30,
            unique_for=unique_for,
        )

    def _message(self, job: QueueJob, phone: str) -> OutboundMessage:
        payload = job.payload
        return OutboundMessage(
            to=phone,
            body=payload.get("body") or "",
            message_type=payload.get("message_type") or "text",
            extra=payload.get("extra") or {},
            notification_type=payload.get("notification_type") or NotificationType.GENERAL,
            lane=job.lane,
            urgent=bool(payload.get("urgent")),
        )

    def _entry(self, job: QueueJob, phone: str, status: str, attempt: int = 0, **fields: Any) -> NotificationLogEntry:
        payload: Dict[str, Any] = job.payload
        return NotificationLogEntry(
            phone=phone,
            job_id=job.id,
            type=payload.get("message_type") or "text",
            notification_type=payload.get("notification_type"),
            status=status,
            attempt=attempt or job.attempts + 1,
            queue=job.lane.value,
            context=payload.get("context") or {},
            **fields,
        )

    async def handle(self, job: QueueJob) -> None:
        phone = EnhancedSecurityService.sanitize_phone_number(job.payload.get("phone") or "")
        if not phone:
            raise PermanentJobError("Invalid or missing phone number")

        message = self._message(job, phone)
        started = time.monotonic()
        try:
            message_id = await self.sender.deliver(message)
        except JobDeferred:
            raise
        except Exception as e:
            duration_ms = round((time.monotonic() - started) * 1000, 2)
            await self.store.log_notification(self._entry(job, phone, "failed", error=str(e), duration_ms=duration_ms))
            logger.warning(f"Send to {mask_phone(phone)} failed on attempt {job.attempts + 1}: {e}")
            if isinstance(e, WhatsAppAPIError) and not e.retryable:
                raise PermanentJobError(str(e)) from e
            raise

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        await self.store.log_notification(self._entry(job, phone, "sent", message_id=message_id, duration_ms=duration_ms))
        logger.info(f"{message.notification_type.value} sent to {mask_phone(phone)} via {job.lane.value}")

    async def failed(self, job: QueueJob, error: BaseException) -> None:
        phone = EnhancedSecurityService.sanitize_phone_number(job.payload.get("phone") or "") or "unknown"
        entry = self._entry(job, phone, "failed_permanently", attempt=job.attempts, error=str(error))
        # Keyed on job id and status, so a repeated call leaves a single entry.
        if not await self.store.log_notification_once(entry):
            logger.debug(f"Final state of job {job.id} was already logged")
