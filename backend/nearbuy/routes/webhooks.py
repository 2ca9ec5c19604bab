# /nearbuy/routes/webhooks.py

import json
import structlog
from typing import Optional
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from nearbuy.config.settings import settings
from nearbuy.utils.dependencies import verify_webhook_signature
from nearbuy.utils.metrics import response_time_histogram

# This file defines the WhatsApp webhook endpoints. Only authentication
# failures produce a non-2xx answer; everything after the signature check is
# acknowledged with 200 so the vendor keeps the subscription active.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


def _query(request: Request, name: str) -> Optional[str]:
    # Meta sends hub.mode; some proxies rewrite it to hub_mode.
    return request.query_params.get(f"hub.{name}") or request.query_params.get(f"hub_{name}")


@router.get("/whatsapp")
async def verify_whatsapp_webhook(request: Request):
    """WhatsApp webhook verification (GET request)."""
    if not settings.whatsapp_verify_token:
        log.error("WhatsApp verify token is not configured.")
        return PlainTextResponse("Verify token not configured", status_code=500)

    if _query(request, "mode") == "subscribe" and _query(request, "verify_token") == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(_query(request, "challenge") or "")

    log.warning("WhatsApp webhook verification failed.")
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/whatsapp")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Acknowledges messages and status updates; processing continues in the background."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, ValueError):
            log.warning("Webhook body is not valid JSON", size=len(verified_body))
            return JSONResponse({"status": "received"})

        try:
            result = await request.app.state.services.dispatcher.accept(data)
        except Exception:
            log.exception("Webhook processing failed")
            result = "received"

        return JSONResponse({"status": result})
