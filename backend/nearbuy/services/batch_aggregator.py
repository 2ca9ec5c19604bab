# /nearbuy/services/batch_aggregator.py

from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from nearbuy.config.settings import BatchConfig
from nearbuy.models.domain import NotificationFrequency, NotificationItem

# Pure helpers for batched notifications: composing the digest text and
# working out when a batch is due. Nothing here touches storage or the network.

RULE = "━" * 18
PREVIEWS_PER_GROUP = 3
PREVIEW_MAX_LENGTH = 40
PREVIEW_CUT_LENGTH = 37

ITEM_TYPE_DISPLAY: Dict[str, Tuple[str, str]] = {
    "product_request": ("📦", "Product Requests"),
    "offer_response": ("💰", "Offer Responses"),
    "flash_deal": ("⚡", "Flash Deals"),
    "job_request": ("👷", "Job Requests"),
    "agreement": ("📋", "Agreements"),
}
FALLBACK_DISPLAY = ("📌", "Notifications")


def item_preview(item: NotificationItem) -> str:
    text = item.description or item.title or "Item"
    if len(text) > PREVIEW_MAX_LENGTH:
        return text[:PREVIEW_CUT_LENGTH] + "..."
    return text


def group_items(items: Sequence[NotificationItem]) -> Dict[str, List[NotificationItem]]:
    """Groups by type in first-seen order, keeping insertion order inside each group."""
    groups: Dict[str, List[NotificationItem]] = {}
    for item in items:
        groups.setdefault(item.type, []).append(item)
    return groups


def compose_digest(items: Sequence[NotificationItem],
                   frequency: Optional[NotificationFrequency] = None,
                   recipient_name: Optional[str] = None) -> str:
    """Builds the WhatsApp digest body for one batch."""
    count = len(items)
    frequency_label = frequency.label() if frequency else "Batched"

    lines = [f"📬 *{frequency_label} Summary*", ""]
    if recipient_name:
        lines += [RULE, f"🏪 *{recipient_name}*", RULE, ""]
    lines += [f"📊 *{count} new notification{'s' if count != 1 else ''}*", ""]

    for item_type, group in group_items(items).items():
        emoji, label = ITEM_TYPE_DISPLAY.get(item_type, FALLBACK_DISPLAY)
        lines.append(f"{emoji} *{label}:* {len(group)}")
        for item in group[:PREVIEWS_PER_GROUP]:
            lines.append(f"   • {item_preview(item)}")
        if len(group) > PREVIEWS_PER_GROUP:
            lines.append(f"   _+ {len(group) - PREVIEWS_PER_GROUP} more..._")
        lines.append("")

    lines += [RULE, "Reply with item number to respond,", "or type *menu* for options."]
    return "\n".join(lines)


def _next_slot(local_now: datetime, slots: List[dt_time]) -> datetime:
    for slot in slots:
        candidate = local_now.replace(hour=slot.hour, minute=slot.minute, second=0, microsecond=0)
        if local_now < candidate:
            return candidate
    first = slots[0]
    return (local_now + timedelta(days=1)).replace(hour=first.hour, minute=first.minute, second=0, microsecond=0)


def next_delivery_time(frequency: NotificationFrequency, now: datetime, tz: ZoneInfo,
                       batch_config: BatchConfig) -> datetime:
    """When a batch opened at `now` should be sent, returned in UTC."""
    local_now = now.astimezone(tz)
    if frequency == NotificationFrequency.IMMEDIATE:
        due = local_now
    elif frequency == NotificationFrequency.EVERY_2_HOURS:
        due = (local_now + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
    elif frequency == NotificationFrequency.TWICE_DAILY:
        due = _next_slot(local_now, batch_config.parsed_times(batch_config.twice_daily_at))
    else:
        due = _next_slot(local_now, batch_config.parsed_times(batch_config.daily_at))
    return due.astimezone(timezone.utc)
