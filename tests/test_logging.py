"""
Tests for log redaction.
"""
import pytest
import structlog

from settlement.monitoring.logging import (
    REDACTED,
    SensitiveDataRedactor,
    build_processors,
    mask_email,
    mask_phone,
)

SECRET_KEY = "sec-live-0123456789abcdef"


@pytest.fixture
def redact() -> SensitiveDataRedactor:
    return SensitiveDataRedactor([SECRET_KEY, None, ""])


class TestSensitiveDataRedactor:
    """Test suite for the redaction processor."""

    @pytest.mark.unit
    def test_credentials_are_replaced(self, redact) -> None:
        event = redact(
            None,
            "info",
            {
                "event": "gateway_request",
                "Authorization": f"Bearer {SECRET_KEY}",
                "signature": "ab" * 32,
                "tx_ref": "DW-1",
            },
        )

        assert event == {
            "event": "gateway_request",
            "Authorization": REDACTED,
            "signature": REDACTED,
            "tx_ref": "DW-1",
        }

    @pytest.mark.unit
    def test_contact_details_are_masked(self, redact) -> None:
        event = redact(
            None,
            "info",
            {
                "event": "checkout_created",
                "email": "chikondi@example.com",
                "phone_number": "0991234567",
                "first_name": "Chikondi",
                "amount": 15000,
            },
        )

        assert event["email"] == "c***@example.com"
        assert event["phone_number"] == "***4567"
        assert event["first_name"] == "C***"
        assert event["amount"] == 15000

    @pytest.mark.unit
    def test_nested_provider_payloads_are_scrubbed(self, redact) -> None:
        event = redact(
            None,
            "warning",
            {
                "event": "gateway_payload",
                "data": {
                    "tx_ref": "DW-1",
                    "customer": {"email": "user@example.com", "phone": "+265991234567"},
                    "logs": [{"message": "charged user@example.com"}],
                },
            },
        )

        customer = event["data"]["customer"]
        assert customer == {"email": "u***@example.com", "phone": "***4567"}
        assert event["data"]["logs"] == [{"message": "charged u***@example.com"}]
        assert event["data"]["tx_ref"] == "DW-1"

    @pytest.mark.unit
    def test_free_text_bodies_are_scrubbed(self, redact) -> None:
        body = (
            f'{{"message": "Invalid key {SECRET_KEY}", "email": "user@example.com", '
            f'"mobile": "0881234567", "auth": "Bearer abc.def.ghi"}}'
        )

        event = redact(None, "error", {"event": "gateway_http_error", "body": body})

        assert SECRET_KEY not in event["body"]
        assert "user@example.com" not in event["body"]
        assert "0881234567" not in event["body"]
        assert "abc.def.ghi" not in event["body"]
        assert "u***@example.com" in event["body"]

    @pytest.mark.unit
    def test_event_name_and_none_values_pass_through(self, redact) -> None:
        event = redact(None, "info", {"event": "user@example.com", "email": None})

        assert event == {"event": "user@example.com", "email": None}

    @pytest.mark.unit
    def test_short_secrets_are_ignored(self) -> None:
        redact = SensitiveDataRedactor(["abc"])

        assert redact(None, "info", {"event": "x", "note": "abcdef"})["note"] == "abcdef"


class TestMasking:
    """Test suite for the masking helpers."""

    @pytest.mark.unit
    def test_mask_email(self) -> None:
        assert mask_email("a@b.mw") == "a***@b.mw"
        assert mask_email("not-an-email") == REDACTED

    @pytest.mark.unit
    def test_mask_phone(self) -> None:
        assert mask_phone("+265 99 123 4567") == "***4567"
        assert mask_phone("123") == REDACTED


class TestProcessorChain:
    """Test suite for the configured processor chain."""

    @pytest.mark.unit
    def test_redaction_runs_before_rendering(self, test_settings) -> None:
        processors = build_processors(test_settings)

        redactors = [p for p in processors if isinstance(p, SensitiveDataRedactor)]
        assert len(redactors) == 1
        assert processors.index(redactors[0]) < len(processors) - 1
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert test_settings.paychangu_secret_key in redactors[0].secrets
        assert test_settings.paychangu_webhook_secret in redactors[0].secrets
