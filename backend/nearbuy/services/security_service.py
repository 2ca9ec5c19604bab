# /nearbuy/services/security_service.py

import hmac
import hashlib
import re
from typing import NamedTuple, Optional

# This service provides the webhook signature check (HMAC-SHA256 over the raw
# request body) and the phone number helpers used for sanitizing and masking.

SIGNATURE_PREFIX = "sha256="
_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


class SignatureCheck(NamedTuple):
    valid: bool
    reason: str


class SecurityService:
    @staticmethod
    def generate_signature(payload: bytes, secret: str) -> str:
        digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return f"{SIGNATURE_PREFIX}{digest}"

    @staticmethod
    def check_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> SignatureCheck:
        """
        Validates an X-Hub-Signature-256 header against the raw body.
        Never raises; the reason code tells the caller why a check failed.
        Format problems are rejected before any HMAC is computed.
        """
        if not signature:
            return SignatureCheck(False, "missing_signature")
        if not signature.startswith(SIGNATURE_PREFIX):
            return SignatureCheck(False, "invalid_signature_format")
        provided_hex = signature[len(SIGNATURE_PREFIX):]
        if not _HEX_DIGEST.match(provided_hex):
            return SignatureCheck(False, "invalid_hash_format")
        if not payload:
            return SignatureCheck(False, "empty_body")
        if not secret:
            return SignatureCheck(False, "missing_secret")

        expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, bytes.fromhex(provided_hex)):
            return SignatureCheck(False, "signature_mismatch")
        return SignatureCheck(True, "ok")

    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
        return SecurityService.check_signature(payload, signature, secret).valid


class EnhancedSecurityService(SecurityService):
    @staticmethod
    def sanitize_phone_number(phone: str) -> str:
        """
        Sanitizes a phone number.
        - Returns the digits-only form WhatsApp uses (e.g., 919876543210) if valid.
        - Returns an empty string for invalid or empty inputs (instead of raising).
        """
        if not phone or not isinstance(phone, str):
            return ""

        clean_phone = re.sub(r"\D", "", phone.strip())

        # Require 10-15 digits
        if not re.match(r"^\d{10,15}$", clean_phone):
            return ""

        return clean_phone

    @staticmethod
    def mask_phone_number(phone: Optional[str]) -> str:
        """Keeps the first three and last three characters: 919****210."""
        if not phone:
            return "unknown"
        phone = str(phone)
        if len(phone) < 6:
            return phone
        return f"{phone[:3]}****{phone[-3:]}"

    @staticmethod
    def truncate_id(value: Optional[str]) -> str:
        """Shortens long WhatsApp ids for log readability."""
        if not value:
            return "unknown"
        if len(value) <= 16:
            return value
        return f"{value[:8]}...{value[-4:]}"


def mask_phone(phone: Optional[str]) -> str:
    return EnhancedSecurityService.mask_phone_number(phone)
