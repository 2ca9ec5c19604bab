# backend/tests/unit/test_batch_aggregator.py

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from nearbuy.config.settings import BatchConfig
from nearbuy.models.domain import NotificationFrequency, NotificationItem
from nearbuy.services.batch_aggregator import RULE, compose_digest, item_preview, next_delivery_time

IST = ZoneInfo("Asia/Kolkata")


def item(item_type, description="", title=None):
    return NotificationItem(type=item_type, description=description, title=title)


class TestComposeDigest:

    def test_groups_truncates_and_counts(self):
        items = [
            item("offer_response", "A" * 50),
            item("offer_response", "B"),
            item("product_request", "C"),
        ]
        assert compose_digest(items).split("\n") == [
            "📬 *Batched Summary*",
            "",
            "📊 *3 new notifications*",
            "",
            "💰 *Offer Responses:* 2",
            "   • " + "A" * 37 + "...",
            "   • B",
            "",
            "📦 *Product Requests:* 1",
            "   • C",
            "",
            RULE,
            "Reply with item number to respond,",
            "or type *menu* for options.",
        ]

    def test_more_than_three_items_adds_more_line(self):
        items = [item("flash_deal", f"Deal {i}") for i in range(5)]
        lines = compose_digest(items).split("\n")
        assert "⚡ *Flash Deals:* 5" in lines
        assert "   • Deal 2" in lines
        assert "   • Deal 3" not in lines
        assert "   _+ 2 more..._" in lines

    def test_unknown_type_uses_fallback_label(self):
        message = compose_digest([item("loyalty_points", "10 points added")])
        assert "📌 *Notifications:* 1" in message
        assert "📊 *1 new notification*" in message

    def test_frequency_label_and_recipient_name(self):
        message = compose_digest([item("agreement", "Loan #12")], NotificationFrequency.DAILY, "Fresh Mart")
        lines = message.split("\n")
        assert lines[0] == "📬 *Daily (9 AM) Summary*"
        assert lines[1] == ""
        assert lines[2:5] == [RULE, "🏪 *Fresh Mart*", RULE]
        assert "📋 *Agreements:* 1" in lines

    def test_group_order_follows_first_appearance(self):
        items = [item("job_request", "Plumber"), item("flash_deal", "50% off"), item("job_request", "Painter")]
        message = compose_digest(items)
        assert message.index("Job Requests") < message.index("Flash Deals")
        assert message.index("Plumber") < message.index("Painter")

    def test_preview_boundaries(self):
        assert item_preview(item("other", "x" * 40)) == "x" * 40
        assert item_preview(item("other", "x" * 41)) == "x" * 37 + "..."
        assert item_preview(item("other", "", title="Title only")) == "Title only"
        assert item_preview(item("other")) == "Item"


class TestNextDeliveryTime:

    # 09:30 in Asia/Kolkata
    NOW = datetime(2026, 1, 5, 4, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("frequency, expected_local", [
        (NotificationFrequency.IMMEDIATE, datetime(2026, 1, 5, 9, 30, tzinfo=IST)),
        (NotificationFrequency.EVERY_2_HOURS, datetime(2026, 1, 5, 11, 0, tzinfo=IST)),
        (NotificationFrequency.TWICE_DAILY, datetime(2026, 1, 5, 17, 0, tzinfo=IST)),
        (NotificationFrequency.DAILY, datetime(2026, 1, 6, 9, 0, tzinfo=IST)),
    ])
    def test_schedule(self, frequency, expected_local):
        due = next_delivery_time(frequency, self.NOW, IST, BatchConfig())
        assert due == expected_local
        assert due.tzinfo == timezone.utc

    def test_twice_daily_after_last_slot_rolls_to_next_morning(self):
        evening = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)  # 17:30 local
        due = next_delivery_time(NotificationFrequency.TWICE_DAILY, evening, IST, BatchConfig())
        assert due == datetime(2026, 1, 6, 9, 0, tzinfo=IST)

    def test_exact_slot_time_moves_to_the_next_slot(self):
        nine_am = datetime(2026, 1, 5, 3, 30, tzinfo=timezone.utc)
        due = next_delivery_time(NotificationFrequency.TWICE_DAILY, nine_am, IST, BatchConfig())
        assert due == datetime(2026, 1, 5, 17, 0, tzinfo=IST)

    def test_configured_slots_are_used(self):
        config = BatchConfig(daily_at=["18:15"])
        due = next_delivery_time(NotificationFrequency.DAILY, self.NOW, IST, config)
        assert due == datetime(2026, 1, 5, 18, 15, tzinfo=IST)
