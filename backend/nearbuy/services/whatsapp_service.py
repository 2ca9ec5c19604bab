# /nearbuy/services/whatsapp_service.py

import httpx
import logging
import tenacity
from typing import Any, Awaitable, Callable, Dict, Optional

from nearbuy.models.domain import OutboundMessage
from nearbuy.services.security_service import EnhancedSecurityService, mask_phone
from nearbuy.utils.alerting import alerting_service

logger = logging.getLogger(__name__)

# Graph API error codes that mean "slow down" rather than "this request is wrong".
THROTTLING_ERROR_CODES = {4, 80007, 130429, 131048, 131056}


class WhatsAppAPIError(Exception):
    """A send the Cloud API answered with an error status."""

    def __init__(self, status_code: int, message: str, code: Optional[int] = None, retryable: bool = False):
        super().__init__(f"WhatsApp API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.code = code
        self.retryable = retryable


def build_message_payload(message: OutboundMessage) -> Dict[str, Any]:
    """Translates an OutboundMessage into a Cloud API /messages request body."""
    to_phone = EnhancedSecurityService.sanitize_phone_number(message.to) or message.to
    extra = message.extra
    payload: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to_phone,
    }

    if message.message_type == "buttons":
        buttons = [
            {"type": "reply", "reply": {"id": str(b["id"]), "title": str(b["title"])[:20]}}
            for b in extra.get("buttons", [])[:3]
        ]
        interactive: Dict[str, Any] = {"type": "button", "body": {"text": message.body[:1024]}, "action": {"buttons": buttons}}
        if extra.get("header"):
            interactive["header"] = {"type": "text", "text": str(extra["header"])[:60]}
        if extra.get("footer"):
            interactive["footer"] = {"text": str(extra["footer"])[:60]}
        payload.update({"type": "interactive", "interactive": interactive})
    elif message.message_type == "list":
        interactive = {
            "type": "list",
            "body": {"text": message.body[:1024]},
            "action": {"button": str(extra.get("button_text", "Select"))[:20], "sections": extra.get("sections", [])},
        }
        if extra.get("header"):
            interactive["header"] = {"type": "text", "text": str(extra["header"])[:60]}
        if extra.get("footer"):
            interactive["footer"] = {"text": str(extra["footer"])[:60]}
        payload.update({"type": "interactive", "interactive": interactive})
    elif message.message_type in ("image", "document"):
        media: Dict[str, Any] = {"id": extra["media_id"]} if extra.get("media_id") else {"link": extra.get("link") or extra.get("url")}
        if message.body:
            media["caption"] = message.body[:1024]
        if message.message_type == "document" and extra.get("filename"):
            media["filename"] = extra["filename"]
        payload.update({"type": message.message_type, message.message_type: media})
    elif message.message_type == "location":
        payload.update({"type": "location", "location": {
            "latitude": extra.get("latitude"),
            "longitude": extra.get("longitude"),
            "name": extra.get("name"),
            "address": extra.get("address"),
        }})
    else:
        payload.update({"type": "text", "text": {"body": message.body[:4096], "preview_url": bool(extra.get("preview_url", False))}})
    return payload


class WhatsAppService:
    def __init__(self, access_token: Optional[str], phone_id: Optional[str], circuit_breaker,
                 api_version: str = "v21.0", timeout: float = 15.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.base_url = f"https://graph.facebook.com/{api_version}"
        self.circuit_breaker = circuit_breaker

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, before_attempt: Optional[Callable[[], Awaitable[None]]], func, *args, **kwargs):
        # Every physical attempt, including network retries, goes through the caller's rate budget.
        if before_attempt:
            await before_attempt()
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict,
                                    before_attempt: Optional[Callable[[], Awaitable[None]]] = None) -> str:
        """
        Posts one request to the messages endpoint and returns the wamid.
        Raises WhatsAppAPIError for error responses, and lets network errors
        and CircuitOpenError propagate once the short retry is exhausted.
        """
        to_phone = payload.get("to")
        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        response = await self.resilient_api_call(before_attempt, self.http_client.post, url, json=payload, headers=headers)

        if response.status_code == 200:
            message_id = (response.json().get("messages") or [{}])[0].get("id")
            if not message_id:
                raise WhatsAppAPIError(200, "Response did not include a message id", retryable=True)
            logger.info(f"WhatsApp message sent to {mask_phone(to_phone)}, wamid: {message_id}")
            return message_id

        try:
            error_data = (response.json() or {}).get("error") or {}
        except ValueError:
            error_data = {}
        error_message = error_data.get("message") or response.text or "Unknown error"
        error_code = error_data.get("code")
        retryable = response.status_code >= 500 or response.status_code == 429 or error_code in THROTTLING_ERROR_CODES
        logger.error(f"whatsapp_send_failed to {mask_phone(to_phone)}: {response.status_code} - {error_message}")
        if response.status_code == 401:
            await alerting_service.send_critical_alert("WhatsApp authentication failed", {"error": "Invalid access token"})
        raise WhatsAppAPIError(response.status_code, error_message, code=error_code, retryable=retryable)

    async def send(self, message: OutboundMessage,
                   before_attempt: Optional[Callable[[], Awaitable[None]]] = None) -> str:
        return await self.send_whatsapp_request(build_message_payload(message), before_attempt=before_attempt)

    async def close(self):
        await self.http_client.aclose()
