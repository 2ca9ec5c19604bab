# /nearbuy/services/dispatch_gateway.py

import asyncio
import structlog
from typing import Any, Optional, Protocol, Set

from nearbuy.models.events import InboundEvent, StatusEvent
from nearbuy.services.security_service import mask_phone
from nearbuy.services.webhook_normalizer import normalize
from nearbuy.utils.metrics import duplicate_messages_counter, inbound_events_counter, status_updates_counter

# This service sits between the webhook route and the conversational flows.
# It acknowledges quickly: events are normalized inline, then each inbound
# message is handed to the flow router on a background task exactly once.

log = structlog.get_logger(__name__)


class FlowRouter(Protocol):
    async def route(self, event: InboundEvent) -> None:
        ...


def dedup_key(message_id: str) -> str:
    return f"wa_msg:{message_id}"


class WebhookDispatcher:
    def __init__(self, leases, store, router: Optional[FlowRouter] = None,
                 expected_object: str = "whatsapp_business_account", dedup_seconds: int = 300):
        self.leases = leases
        self.store = store
        self.router = router
        self.expected_object = expected_object
        self.dedup_seconds = dedup_seconds
        self._tasks: Set[asyncio.Task] = set()

    async def accept(self, payload: Any) -> str:
        """Returns "received" for a payload from the expected account type, "ignored" otherwise."""
        if not isinstance(payload, dict) or payload.get("object") != self.expected_object:
            log.info("Ignoring webhook for unexpected object", object=payload.get("object") if isinstance(payload, dict) else None)
            return "ignored"

        for event in normalize(payload):
            if isinstance(event, StatusEvent):
                await self._handle_status(event)
            else:
                await self._handle_message(event)
        return "received"

    async def _handle_message(self, event: InboundEvent) -> None:
        if not event.message_id:
            log.warning("Skipping inbound message without an id", sender=mask_phone(event.source_id))
            return
        if not await self.leases.acquire(dedup_key(event.message_id), self.dedup_seconds):
            duplicate_messages_counter.inc()
            log.debug("Duplicate inbound message dropped", message_id=event.message_id)
            return

        inbound_events_counter.labels(event_type=event.type).inc()
        log.info("Inbound message accepted", message_id=event.message_id, type=event.type,
                 sender=mask_phone(event.source_id))
        task = asyncio.create_task(self._route(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _route(self, event: InboundEvent) -> None:
        if self.router is None:
            log.info("No flow router configured, inbound message not routed", message_id=event.message_id)
            return
        try:
            await self.router.route(event)
        except Exception:
            # The webhook was already acknowledged; a flow failure must not resurface here.
            log.exception("Flow router failed", message_id=event.message_id)

    async def _handle_status(self, event: StatusEvent) -> None:
        if not event.message_id or not event.status:
            log.debug("Skipping status update without id or status")
            return
        status_updates_counter.labels(status=event.status).inc()
        for error in event.errors:
            log.error("WhatsApp delivery failed", message_id=event.message_id, code=error.code,
                      title=error.title, error_message=error.message)
        await self.store.update_status(event.message_id, event.status, event.errors)
        log.info("Status update applied", message_id=event.message_id, status=event.status)

    async def drain(self) -> None:
        """Waits for in-flight hand-offs; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
