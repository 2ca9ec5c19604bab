# /nearbuy/models/domain.py

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# This file defines the core Pydantic models and enums shared by the
# notification pipeline: lanes, notification types, batches and delivery logs.


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lane(str, Enum):
    """Queue lanes, declared highest priority first."""
    FLASH_DEALS = "flash-deals"
    FISH_ALERTS = "fish-alerts"
    JOB_NOTIFICATIONS = "job-notifications"
    PRODUCT_REQUESTS = "product-requests"
    OFFERS = "offers"
    NOTIFICATIONS = "notifications"
    DEFAULT = "default"

    @classmethod
    def in_priority_order(cls) -> List["Lane"]:
        return list(cls)


class NotificationType(str, Enum):
    """Business notification types known to the outbound pipeline."""
    FLASH_DEAL = "flash_deal"
    FLASH_DEAL_ACTIVATION = "flash_deal_activation"
    FLASH_DEAL_COUPON = "flash_deal_coupon"
    FISH_ALERT = "fish_alert"
    FISH_ARRIVAL_IMMINENT = "fish_arrival_imminent"
    JOB_NOTIFICATION = "job_notification"
    JOB_ACCEPTED = "job_accepted"
    PRODUCT_REQUEST = "product_request"
    OFFER = "offer"
    BATCH_DIGEST = "batch_digest"
    AGREEMENT = "agreement"
    OTP = "otp"
    URGENT = "urgent"
    GENERAL = "general"


class NotificationFrequency(str, Enum):
    """How often a recipient receives batched notifications."""
    IMMEDIATE = "immediate"
    EVERY_2_HOURS = "2hours"
    TWICE_DAILY = "twice_daily"
    DAILY = "daily"

    def label(self) -> str:
        return {
            NotificationFrequency.IMMEDIATE: "Immediate",
            NotificationFrequency.EVERY_2_HOURS: "Every 2 Hours",
            NotificationFrequency.TWICE_DAILY: "Twice Daily (9 AM & 5 PM)",
            NotificationFrequency.DAILY: "Daily (9 AM)",
        }[self]


class BatchStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class ItemType(str, Enum):
    PRODUCT_REQUEST = "product_request"
    OFFER_RESPONSE = "offer_response"
    FLASH_DEAL = "flash_deal"
    JOB_REQUEST = "job_request"
    AGREEMENT = "agreement"
    OTHER = "other"


class NotificationItem(BaseModel):
    # Kept as a plain string so items written by older producers still render.
    type: str = ItemType.OTHER.value
    description: str = ""
    title: Optional[str] = None
    ref_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class NotificationBatch(BaseModel):
    """
    One digest-in-waiting for a recipient. Status only moves forward:
    pending -> sent | failed | skipped.
    """
    id: Optional[str] = None
    recipient_id: str
    recipient_name: Optional[str] = None
    status: BatchStatus = BatchStatus.PENDING
    items: List[NotificationItem] = []
    frequency: NotificationFrequency = NotificationFrequency.IMMEDIATE
    scheduled_for: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    message_id: Optional[str] = None
    total_items: int = 0
    sent_count: int = 0
    failed_count: int = 0
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == BatchStatus.PENDING

    @property
    def item_count(self) -> int:
        return len(self.items)


class OutboundMessage(BaseModel):
    """A message ready for the send client, plus the facts the send policies need."""
    to: str
    body: str = ""
    message_type: str = "text"
    extra: Dict[str, Any] = {}
    notification_type: NotificationType = NotificationType.GENERAL
    lane: Lane = Lane.DEFAULT
    urgent: bool = False


class DeliveryError(BaseModel):
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class NotificationLogEntry(BaseModel):
    """One outbound send attempt, later enriched by delivery status webhooks."""
    phone: str
    job_id: Optional[str] = None
    type: str = "text"
    notification_type: Optional[str] = None
    status: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None
    attempt: int = 1
    queue: Optional[str] = None
    context: Dict[str, Any] = {}
    delivery_status: Optional[str] = None
    delivery_errors: List[DeliveryError] = []
    created_at: datetime = Field(default_factory=utcnow)
