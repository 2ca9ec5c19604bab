# /nearbuy/services/outbound.py

import math
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from nearbuy.config.settings import QuietHoursConfig, RateLimitConfig
from nearbuy.jobs.base import QuietHoursDeferral, RateLimitDeferral
from nearbuy.models.domain import OutboundMessage, utcnow
from nearbuy.services.security_service import mask_phone
from nearbuy.services.whatsapp_service import WhatsAppService
from nearbuy.utils.metrics import outbound_messages_counter
from nearbuy.utils.rate_limiter import Limit, RateBudget

# This service is the only path to the WhatsApp send API. Before any network
# call it checks the quiet-hours window, then takes one grant from the shared
# API, lane and recipient budgets together. A failed check raises a deferral
# so the job is re-enqueued; nothing is ever dropped.

logger = logging.getLogger(__name__)

API_BUDGET_SCOPE = "whatsapp-api"


class QuietHoursPolicy:
    def __init__(self, config: QuietHoursConfig):
        self.config = config

    def is_quiet(self, now: datetime) -> bool:
        if not self.config.enabled:
            return False
        hour = now.astimezone(self.config.tz).hour
        start, end = self.config.start, self.config.end
        if start > end:
            # Window wraps midnight, e.g. 22:00-07:00.
            return hour >= start or hour < end
        return start <= hour < end

    def is_exempt(self, message: OutboundMessage) -> bool:
        return message.urgent or message.notification_type in self.config.exempt_types

    def next_allowed(self, now: datetime) -> datetime:
        """First instant at or after `now` that is outside the quiet window."""
        if not self.is_quiet(now):
            return now
        local = now.astimezone(self.config.tz)
        resume = local.replace(hour=self.config.end, minute=0, second=0, microsecond=0)
        if resume <= local:
            resume += timedelta(days=1)
        return resume.astimezone(timezone.utc)

    def seconds_until_allowed(self, now: datetime) -> float:
        return max((self.next_allowed(now) - now).total_seconds(), 0.0)


class OutboundSender:
    def __init__(self, client: WhatsAppService, rate_budget: RateBudget, quiet_hours: QuietHoursPolicy,
                 rate_config: RateLimitConfig, clock: Callable[[], datetime] = utcnow):
        self.client = client
        self.rate_budget = rate_budget
        self.quiet_hours = quiet_hours
        self.rate_config = rate_config
        self.clock = clock

    def api_limits(self, message: OutboundMessage) -> List[Limit]:
        limits = [
            Limit(API_BUDGET_SCOPE, self.rate_config.per_second, 1),
            Limit(API_BUDGET_SCOPE, self.rate_config.per_minute, 60),
        ]
        lane_limit = self.rate_config.lanes.get(message.lane)
        if lane_limit:
            if lane_limit.per_second:
                limits.append(Limit(f"lane:{message.lane.value}", lane_limit.per_second, 1))
            if lane_limit.per_minute:
                limits.append(Limit(f"lane:{message.lane.value}", lane_limit.per_minute, 60))
        return limits

    async def deliver(self, message: OutboundMessage) -> str:
        """
        Sends one message and returns its wamid. Raises QuietHoursDeferral or
        RateLimitDeferral when the send has to wait, and lets delivery errors
        propagate for the job's retry policy.
        """
        now = self.clock()
        if self.quiet_hours.is_quiet(now) and not self.quiet_hours.is_exempt(message):
            delay = self.quiet_hours.seconds_until_allowed(now)
            logger.info(f"Holding {message.notification_type.value} for {mask_phone(message.to)} until quiet hours end ({delay:.0f}s)")
            raise QuietHoursDeferral(delay)

        # One grant covers the global, lane and recipient windows, so a deferred
        # attempt consumes nothing in any of them.
        limits = self.api_limits(message) + [
            Limit(f"recipient:{message.to}", self.rate_config.per_recipient_per_minute, 60)
        ]

        async def acquire_api_budget():
            retry_after = await self.rate_budget.acquire(limits, max_wait=self.rate_config.max_wait_seconds)
            if retry_after > 0:
                # Waits beyond one second come from a per-minute window, usually the recipient's.
                floor = self.rate_config.recipient_release_seconds if retry_after > 1 else self.rate_config.release_seconds
                logger.info(f"Rate budget exhausted for {mask_phone(message.to)} on lane {message.lane.value}, re-enqueueing")
                raise RateLimitDeferral(max(floor, math.ceil(retry_after)))

        try:
            message_id = await self.client.send(message, before_attempt=acquire_api_budget)
        except RateLimitDeferral:
            raise
        except Exception:
            outbound_messages_counter.labels(status="failed", message_type=message.message_type).inc()
            raise
        outbound_messages_counter.labels(status="sent", message_type=message.message_type).inc()
        return message_id
