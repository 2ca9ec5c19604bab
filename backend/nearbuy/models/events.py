# /nearbuy/models/events.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from nearbuy.models.domain import DeliveryError

# Normalized representations of WhatsApp webhook items. Message content is a
# tagged union keyed on `type`, with RawContent as the catch-all variant.


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    body: str = ""


class ButtonReplyContent(BaseModel):
    type: Literal["button_reply"] = "button_reply"
    id: Optional[str] = None
    title: Optional[str] = None


class ListReplyContent(BaseModel):
    type: Literal["list_reply"] = "list_reply"
    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class FlowReplyContent(BaseModel):
    type: Literal["flow_reply"] = "flow_reply"
    response_json: Optional[str] = None
    body: Optional[str] = None
    name: Optional[str] = None


class LocationContent(BaseModel):
    type: Literal["location"] = "location"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class MediaContent(BaseModel):
    type: Literal["image", "document"]
    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class ButtonContent(BaseModel):
    type: Literal["button"] = "button"
    text: Optional[str] = None
    payload: Optional[str] = None


class RawContent(BaseModel):
    """Unrecognized message or interactive subtype, passed through untouched."""
    type: str
    raw: Dict[str, Any] = {}


MessageContent = Union[
    TextContent,
    ButtonReplyContent,
    ListReplyContent,
    FlowReplyContent,
    LocationContent,
    MediaContent,
    ButtonContent,
    RawContent,
]


class InboundEvent(BaseModel):
    source_id: str
    message_id: Optional[str] = None
    timestamp: Optional[str] = None
    type: str
    content: MessageContent
    profile_name: Optional[str] = None
    context_id: Optional[str] = None
    phone_number_id: Optional[str] = None

    @property
    def received_at(self) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp(int(self.timestamp), tz=timezone.utc)
        except (TypeError, ValueError):
            return None


class StatusEvent(BaseModel):
    message_id: Optional[str] = None
    status: Optional[str] = None
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: List[DeliveryError] = []

    @property
    def is_failure(self) -> bool:
        return self.status == "failed"


WebhookEvent = Union[InboundEvent, StatusEvent]
