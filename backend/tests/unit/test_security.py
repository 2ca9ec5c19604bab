# backend/tests/unit/test_security.py

import pytest
from nearbuy.services.security_service import EnhancedSecurityService as SecurityService, mask_phone

SECRET = "test_app_secret"
BODY = b'{"object":"whatsapp_business_account","entry":[]}'


class TestWebhookSignature:

    def test_generated_signature_is_accepted(self):
        signature = SecurityService.generate_signature(BODY, SECRET)
        assert signature.startswith("sha256=")
        assert SecurityService.verify_webhook_signature(BODY, signature, SECRET) is True
        assert SecurityService.check_signature(BODY, signature, SECRET).reason == "ok"

    def test_single_bit_change_in_body_is_rejected(self):
        signature = SecurityService.generate_signature(BODY, SECRET)
        for index in (0, len(BODY) // 2, len(BODY) - 1):
            tampered = bytearray(BODY)
            tampered[index] ^= 0x01
            check = SecurityService.check_signature(bytes(tampered), signature, SECRET)
            assert check.valid is False
            assert check.reason == "signature_mismatch"

    def test_wrong_secret_is_rejected(self):
        signature = SecurityService.generate_signature(BODY, "another_secret")
        assert SecurityService.check_signature(BODY, signature, SECRET).reason == "signature_mismatch"

    @pytest.mark.parametrize("signature, reason", [
        (None, "missing_signature"),
        ("", "missing_signature"),
        ("sha1=" + "a" * 64, "invalid_signature_format"),
        ("a" * 64, "invalid_signature_format"),
        ("sha256=invalid", "invalid_hash_format"),
        ("sha256=" + "a" * 63, "invalid_hash_format"),
        ("sha256=" + "A" * 64, "invalid_hash_format"),
        ("sha256=" + "g" * 64, "invalid_hash_format"),
    ])
    def test_malformed_signatures_report_their_reason(self, signature, reason):
        check = SecurityService.check_signature(BODY, signature, SECRET)
        assert check.valid is False
        assert check.reason == reason

    def test_format_is_checked_before_any_hmac(self, mocker):
        new_hmac = mocker.patch("nearbuy.services.security_service.hmac.new")
        assert SecurityService.check_signature(BODY, "sha256=xyz", SECRET).reason == "invalid_hash_format"
        new_hmac.assert_not_called()

    def test_empty_body_is_rejected(self):
        signature = SecurityService.generate_signature(b"", SECRET)
        assert SecurityService.check_signature(b"", signature, SECRET).reason == "empty_body"

    def test_missing_secret_is_rejected(self):
        signature = "sha256=" + "0" * 64
        assert SecurityService.check_signature(BODY, signature, None).reason == "missing_secret"


class TestPhoneHelpers:

    def test_sanitize_phone_number_valid(self):
        assert SecurityService.sanitize_phone_number("+91 98765-43210") == "919876543210"
        assert SecurityService.sanitize_phone_number("9876543210") == "9876543210"

    def test_sanitize_phone_number_invalid_returns_empty(self):
        assert SecurityService.sanitize_phone_number("123") == ""
        assert SecurityService.sanitize_phone_number("1234567890123456") == ""
        assert SecurityService.sanitize_phone_number(None) == ""
        assert SecurityService.sanitize_phone_number("not a number") == ""

    def test_mask_phone(self):
        assert mask_phone("919876543210") == "919****210"
        assert mask_phone(None) == "unknown"
        assert mask_phone("12345") == "12345"

    def test_truncate_id(self):
        wamid = "wamid.HBgMOTE5ODc2NTQzMjEwFQIAERgSMEQ"
        assert SecurityService.truncate_id(wamid) == "wamid.HB...SMEQ"
        assert SecurityService.truncate_id("short_id") == "short_id"
        assert SecurityService.truncate_id(None) == "unknown"
