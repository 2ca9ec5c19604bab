# /nearbuy/utils/dependencies.py

import secrets
import structlog
from fastapi import HTTPException, Request

from nearbuy.config.settings import settings
from nearbuy.services.security_service import SIGNATURE_PREFIX, SecurityService
from nearbuy.utils.metrics import webhook_signature_counter

log = structlog.get_logger(__name__)


def get_remote_address(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


async def verify_webhook_signature(request: Request) -> bytes:
    """Returns the raw body once X-Hub-Signature-256 checks out; raises 403 otherwise."""
    body = await request.body()
    if not settings.signature_verification_enabled:
        webhook_signature_counter.labels(status="skipped", reason="verification_disabled").inc()
        log.warning("Webhook signature verification is disabled", environment=settings.environment)
        return body

    signature = request.headers.get("x-hub-signature-256")
    check = SecurityService.check_signature(body, signature, settings.whatsapp_app_secret)
    if not check.valid:
        webhook_signature_counter.labels(status="invalid", reason=check.reason).inc()
        log.error(
            "Invalid webhook signature.",
            reason=check.reason,
            client_ip=get_remote_address(request),
            signature_prefix=(signature or "")[:len(SIGNATURE_PREFIX) + 8],
        )
        raise HTTPException(status_code=403, detail="Invalid signature")

    webhook_signature_counter.labels(status="valid", reason=check.reason).inc()
    log.debug("Webhook signature verified successfully.")
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
