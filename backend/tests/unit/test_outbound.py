# backend/tests/unit/test_outbound.py

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from nearbuy.config.settings import QuietHoursConfig, RateLimitConfig
from nearbuy.jobs.base import QuietHoursDeferral, RateLimitDeferral
from nearbuy.models.domain import Lane, NotificationType, OutboundMessage
from nearbuy.services.outbound import API_BUDGET_SCOPE, OutboundSender, QuietHoursPolicy
from nearbuy.services.whatsapp_service import WhatsAppAPIError, WhatsAppService, build_message_payload
from nearbuy.utils.circuit_breaker import CircuitBreaker
from nearbuy.utils.rate_limiter import InMemoryRateBudget

# 23:00 on 2026-01-05 in Asia/Kolkata
LATE_NIGHT = datetime(2026, 1, 5, 17, 30, tzinfo=timezone.utc)
# 11:30 on 2026-01-05 in Asia/Kolkata
MIDDAY = datetime(2026, 1, 5, 6, 0, tzinfo=timezone.utc)


def make_sender(whatsapp_client, fake_clock, now, rate_config=None, quiet=None):
    budget = InMemoryRateBudget(clock=fake_clock, sleep=fake_clock.sleep)
    sender = OutboundSender(
        whatsapp_client,
        budget,
        QuietHoursPolicy(quiet or QuietHoursConfig()),
        rate_config or RateLimitConfig(),
        clock=lambda: now,
    )
    return sender, budget


class TestQuietHoursPolicy:

    @pytest.mark.parametrize("local_hour, quiet", [
        (21, False), (22, True), (23, True), (0, True), (6, True), (7, False), (12, False),
    ])
    def test_window_wraps_midnight(self, local_hour, quiet):
        policy = QuietHoursPolicy(QuietHoursConfig())
        now = datetime(2026, 1, 5, local_hour, 30, tzinfo=QuietHoursConfig().tz)
        assert policy.is_quiet(now) is quiet

    def test_non_wrapping_window(self):
        policy = QuietHoursPolicy(QuietHoursConfig(start=13, end=15))
        tz = policy.config.tz
        assert policy.is_quiet(datetime(2026, 1, 5, 14, 0, tzinfo=tz))
        assert not policy.is_quiet(datetime(2026, 1, 5, 15, 0, tzinfo=tz))

    def test_next_allowed_is_end_of_window(self):
        policy = QuietHoursPolicy(QuietHoursConfig())
        resume = policy.next_allowed(LATE_NIGHT)
        assert resume == datetime(2026, 1, 6, 7, 0, tzinfo=policy.config.tz)
        assert policy.seconds_until_allowed(LATE_NIGHT) == 8 * 3600
        assert policy.next_allowed(MIDDAY) == MIDDAY

    def test_disabled_policy_is_never_quiet(self):
        assert QuietHoursPolicy(QuietHoursConfig(enabled=False)).is_quiet(LATE_NIGHT) is False

    def test_exemptions(self):
        policy = QuietHoursPolicy(QuietHoursConfig())
        assert policy.is_exempt(OutboundMessage(to="919876543210", notification_type=NotificationType.OTP))
        assert policy.is_exempt(OutboundMessage(to="919876543210", notification_type=NotificationType.JOB_ACCEPTED))
        assert policy.is_exempt(OutboundMessage(to="919876543210", urgent=True))
        assert not policy.is_exempt(OutboundMessage(to="919876543210", notification_type=NotificationType.FLASH_DEAL))

    def test_unknown_exempt_type_fails_validation(self):
        with pytest.raises(ValueError):
            QuietHoursConfig(exempt_types={"not_a_type"})

    def test_config_is_immutable(self):
        config = QuietHoursConfig()
        with pytest.raises(ValueError):
            config.start = 23
        assert config.start == 22


class TestOutboundSender:

    @pytest.mark.asyncio
    async def test_non_exempt_message_is_held_during_quiet_hours(self, whatsapp_client, fake_clock):
        sender, budget = make_sender(whatsapp_client, fake_clock, LATE_NIGHT)
        message = OutboundMessage(to="919876543210", body="50% off", notification_type=NotificationType.FLASH_DEAL)

        with pytest.raises(QuietHoursDeferral) as exc_info:
            await sender.deliver(message)

        assert exc_info.value.delay_seconds == 8 * 3600
        whatsapp_client.send.assert_not_awaited()
        assert budget.usage(API_BUDGET_SCOPE, 1) == 0

    @pytest.mark.asyncio
    async def test_exempt_message_is_sent_during_quiet_hours(self, whatsapp_client, fake_clock):
        sender, _ = make_sender(whatsapp_client, fake_clock, LATE_NIGHT)
        message = OutboundMessage(to="919876543210", body="Your OTP is 1234", notification_type=NotificationType.OTP)

        assert await sender.deliver(message) == "wamid.test1"
        whatsapp_client.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_consumes_global_and_lane_budget(self, whatsapp_client, fake_clock):
        sender, budget = make_sender(whatsapp_client, fake_clock, MIDDAY)
        message = OutboundMessage(to="919876543210", body="Deal", lane=Lane.FLASH_DEALS)

        await sender.deliver(message)

        assert budget.usage(API_BUDGET_SCOPE, 1) == 1
        assert budget.usage(API_BUDGET_SCOPE, 60) == 1
        assert budget.usage("lane:flash-deals", 1) == 1
        assert budget.usage("recipient:919876543210", 60) == 1

    @pytest.mark.asyncio
    async def test_recipient_limit_defers(self, whatsapp_client, fake_clock):
        sender, _ = make_sender(whatsapp_client, fake_clock, MIDDAY)
        message = OutboundMessage(to="919876543210", body="hello")
        for _ in range(10):
            await sender.deliver(message)

        with pytest.raises(RateLimitDeferral) as exc_info:
            await sender.deliver(message)

        assert exc_info.value.delay_seconds == 60
        assert whatsapp_client.send.await_count == 10

    @pytest.mark.asyncio
    async def test_deferred_sends_do_not_use_recipient_slots(self, whatsapp_client, fake_clock):
        config = RateLimitConfig(per_second=1, max_wait_seconds=0, lanes={})
        sender, budget = make_sender(whatsapp_client, fake_clock, MIDDAY, rate_config=config)
        await sender.deliver(OutboundMessage(to="919000000001", body="first"))

        message = OutboundMessage(to="919876543210", body="hello")
        for _ in range(10):
            with pytest.raises(RateLimitDeferral) as exc_info:
                await sender.deliver(message)
            assert exc_info.value.delay_seconds == 1

        assert budget.usage("recipient:919876543210", 60) == 0
        assert budget.usage(API_BUDGET_SCOPE, 60) == 1

        fake_clock.advance(1)
        assert await sender.deliver(message) == "wamid.test2"
        assert budget.usage("recipient:919876543210", 60) == 1

    @pytest.mark.asyncio
    async def test_exhausted_api_budget_re_enqueues(self, whatsapp_client, fake_clock):
        config = RateLimitConfig(per_second=2, per_minute=100, max_wait_seconds=0, lanes={})
        sender, budget = make_sender(whatsapp_client, fake_clock, MIDDAY, rate_config=config)

        await sender.deliver(OutboundMessage(to="919000000001", body="a"))
        await sender.deliver(OutboundMessage(to="919000000002", body="b"))
        with pytest.raises(RateLimitDeferral) as exc_info:
            await sender.deliver(OutboundMessage(to="919000000003", body="c"))

        assert exc_info.value.delay_seconds == 1
        assert budget.usage(API_BUDGET_SCOPE, 1) == 2

    @pytest.mark.asyncio
    async def test_short_budget_wait_blocks_then_sends(self, whatsapp_client, fake_clock):
        config = RateLimitConfig(per_second=2, per_minute=100, max_wait_seconds=5, lanes={})
        sender, budget = make_sender(whatsapp_client, fake_clock, MIDDAY, rate_config=config)

        for i in range(3):
            await sender.deliver(OutboundMessage(to=f"91900000000{i}", body="x"))

        assert fake_clock.sleeps == [1.0]
        assert whatsapp_client.send.await_count == 3

    @pytest.mark.asyncio
    async def test_lane_ceiling_applies_on_top_of_global(self, whatsapp_client, fake_clock):
        config = RateLimitConfig(max_wait_seconds=0, lanes={Lane.NOTIFICATIONS: {"per_minute": 1}})
        sender, _ = make_sender(whatsapp_client, fake_clock, MIDDAY, rate_config=config)

        await sender.deliver(OutboundMessage(to="919000000001", body="digest", lane=Lane.NOTIFICATIONS))
        with pytest.raises(RateLimitDeferral):
            await sender.deliver(OutboundMessage(to="919000000002", body="digest", lane=Lane.NOTIFICATIONS))
        # Other lanes are unaffected.
        await sender.deliver(OutboundMessage(to="919000000003", body="offer", lane=Lane.OFFERS))

    @pytest.mark.asyncio
    async def test_delivery_errors_propagate(self, whatsapp_client, fake_clock):
        whatsapp_client.send.side_effect = WhatsAppAPIError(503, "Service unavailable", retryable=True)
        sender, _ = make_sender(whatsapp_client, fake_clock, MIDDAY)

        with pytest.raises(WhatsAppAPIError):
            await sender.deliver(OutboundMessage(to="919876543210", body="hi"))


class TestMessagePayload:

    def test_text(self):
        payload = build_message_payload(OutboundMessage(to="+91 98765 43210", body="Hello"))
        assert payload["to"] == "919876543210"
        assert payload["type"] == "text"
        assert payload["text"] == {"body": "Hello", "preview_url": False}

    def test_buttons_are_capped_at_three(self):
        buttons = [{"id": f"B{i}", "title": f"Option {i}"} for i in range(5)]
        payload = build_message_payload(OutboundMessage(
            to="919876543210", body="Pick one", message_type="buttons", extra={"buttons": buttons, "header": "Offer"},
        ))
        interactive = payload["interactive"]
        assert interactive["type"] == "button"
        assert len(interactive["action"]["buttons"]) == 3
        assert interactive["header"] == {"type": "text", "text": "Offer"}

    def test_list(self):
        sections = [{"title": "Fish", "rows": [{"id": "F1", "title": "Sardine"}]}]
        payload = build_message_payload(OutboundMessage(
            to="919876543210", body="Choose", message_type="list", extra={"button_text": "View", "sections": sections},
        ))
        assert payload["interactive"]["action"] == {"button": "View", "sections": sections}

    def test_document_by_url(self):
        payload = build_message_payload(OutboundMessage(
            to="919876543210", body="Your agreement", message_type="document",
            extra={"url": "https://example.com/a.pdf", "filename": "agreement.pdf"},
        ))
        assert payload["type"] == "document"
        assert payload["document"] == {"link": "https://example.com/a.pdf", "caption": "Your agreement", "filename": "agreement.pdf"}

    def test_location(self):
        payload = build_message_payload(OutboundMessage(
            to="919876543210", message_type="location", extra={"latitude": 10.0, "longitude": 76.3, "name": "Shop"},
        ))
        assert payload["location"]["name"] == "Shop"
        assert payload["location"]["latitude"] == 10.0


class TestWhatsAppService:

    def make_service(self, response):
        http_client = MagicMock()
        http_client.post = AsyncMock(return_value=response)
        return WhatsAppService("token", "1234567890", CircuitBreaker("whatsapp"), http_client=http_client), http_client

    @pytest.mark.asyncio
    async def test_success_returns_wamid_and_runs_budget_hook(self):
        response = MagicMock(status_code=200, json=lambda: {"messages": [{"id": "wamid_123"}]})
        service, http_client = self.make_service(response)
        before_attempt = AsyncMock()

        wamid = await service.send(OutboundMessage(to="919876543210", body="Hello"), before_attempt=before_attempt)

        assert wamid == "wamid_123"
        before_attempt.assert_awaited_once()
        http_client.post.assert_awaited_once()
        assert http_client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, code, retryable", [
        (500, None, True),
        (429, None, True),
        (400, 131056, True),
        (400, 100, False),
        (404, None, False),
    ])
    async def test_error_classification(self, status_code, code, retryable):
        response = MagicMock(status_code=status_code, text="error", json=lambda: {"error": {"message": "boom", "code": code}})
        service, _ = self.make_service(response)

        with pytest.raises(WhatsAppAPIError) as exc_info:
            await service.send(OutboundMessage(to="919876543210", body="Hello"))

        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_unauthorized_raises_alert(self, mocker):
        alert = mocker.patch("nearbuy.services.whatsapp_service.alerting_service.send_critical_alert", new_callable=AsyncMock)
        response = MagicMock(status_code=401, text="", json=lambda: {"error": {"message": "Invalid OAuth access token", "code": 190}})
        service, _ = self.make_service(response)

        with pytest.raises(WhatsAppAPIError) as exc_info:
            await service.send(OutboundMessage(to="919876543210", body="Hello"))

        assert exc_info.value.retryable is False
        alert.assert_awaited_once()
