# /nearbuy/services/webhook_normalizer.py

import structlog
from typing import Any, Dict, List, Optional

from nearbuy.models.domain import DeliveryError
from nearbuy.models.events import (
    ButtonContent,
    ButtonReplyContent,
    FlowReplyContent,
    InboundEvent,
    ListReplyContent,
    LocationContent,
    MediaContent,
    MessageContent,
    RawContent,
    StatusEvent,
    TextContent,
    WebhookEvent,
)

# This service turns the nested WhatsApp Cloud API webhook payload into flat
# InboundEvent / StatusEvent records. The vendor shape is not contractually
# stable, so every lookup tolerates missing or mistyped fields.

log = structlog.get_logger(__name__)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _interactive_content(interactive: Dict[str, Any]) -> MessageContent:
    kind = _str(interactive.get("type")) or "unknown"
    if kind == "button_reply":
        reply = _dict(interactive.get("button_reply"))
        return ButtonReplyContent(id=_str(reply.get("id")), title=_str(reply.get("title")))
    if kind == "list_reply":
        reply = _dict(interactive.get("list_reply"))
        return ListReplyContent(
            id=_str(reply.get("id")),
            title=_str(reply.get("title")),
            description=_str(reply.get("description")),
        )
    if kind == "nfm_reply":
        reply = _dict(interactive.get("nfm_reply"))
        return FlowReplyContent(
            response_json=_str(reply.get("response_json")),
            body=_str(reply.get("body")),
            name=_str(reply.get("name")),
        )
    return RawContent(type=kind, raw=interactive)


def _message_content(message: Dict[str, Any], message_type: str) -> MessageContent:
    section = _dict(message.get(message_type))

    if message_type == "text":
        return TextContent(body=_str(section.get("body")) or "")
    if message_type == "interactive":
        return _interactive_content(section)
    if message_type == "location":
        return LocationContent(
            latitude=_float(section.get("latitude")),
            longitude=_float(section.get("longitude")),
            name=_str(section.get("name")),
            address=_str(section.get("address")),
        )
    if message_type in ("image", "document"):
        return MediaContent(
            type=message_type,
            id=_str(section.get("id")),
            mime_type=_str(section.get("mime_type")),
            sha256=_str(section.get("sha256")),
            caption=_str(section.get("caption")),
            filename=_str(section.get("filename")) if message_type == "document" else None,
        )
    if message_type == "button":
        return ButtonContent(text=_str(section.get("text")), payload=_str(section.get("payload")))
    return RawContent(type=message_type, raw=section)


def _profile_name(contacts: List[Any], sender: Optional[str]) -> Optional[str]:
    """Matches the sender's contact by wa_id, falling back to the first contact."""
    contacts = [_dict(c) for c in contacts]
    if not contacts:
        return None
    match = next((c for c in contacts if sender and _str(c.get("wa_id")) == sender), contacts[0])
    return _str(_dict(match.get("profile")).get("name"))


def normalize_message(message: Dict[str, Any], contacts: List[Any], metadata: Dict[str, Any]) -> InboundEvent:
    sender = _str(message.get("from")) or ""
    message_type = _str(message.get("type")) or "unknown"
    return InboundEvent(
        source_id=sender,
        message_id=_str(message.get("id")),
        timestamp=_str(message.get("timestamp")),
        type=message_type,
        content=_message_content(message, message_type),
        profile_name=_profile_name(contacts, sender),
        context_id=_str(_dict(message.get("context")).get("id")),
        phone_number_id=_str(metadata.get("phone_number_id")),
    )


def normalize_status(status: Dict[str, Any]) -> StatusEvent:
    state = _str(status.get("status"))
    errors = []
    if state == "failed":
        for error in _list(status.get("errors")):
            error = _dict(error)
            errors.append(DeliveryError(
                code=_int(error.get("code")),
                title=_str(error.get("title")),
                message=_str(error.get("message")) or _str(_dict(error.get("error_data")).get("details")),
            ))
    return StatusEvent(
        message_id=_str(status.get("id")),
        status=state,
        timestamp=_str(status.get("timestamp")),
        recipient_id=_str(status.get("recipient_id")),
        errors=errors,
    )


def normalize(payload: Any) -> List[WebhookEvent]:
    """
    Flattens entry[].changes[].value into events. Messages and statuses that
    share one value are both emitted, messages first. Changes for fields other
    than "messages" are skipped.
    """
    events: List[WebhookEvent] = []
    for entry in _list(_dict(payload).get("entry")):
        for change in _list(_dict(entry).get("changes")):
            change = _dict(change)
            field = change.get("field")
            if field is not None and field != "messages":
                log.debug("Ignoring non-message change", field=field)
                continue

            value = _dict(change.get("value"))
            metadata = _dict(value.get("metadata"))
            contacts = _list(value.get("contacts"))

            for message in _list(value.get("messages")):
                events.append(normalize_message(_dict(message), contacts, metadata))
            for status in _list(value.get("statuses")):
                events.append(normalize_status(_dict(status)))
    return events
