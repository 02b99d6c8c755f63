"""
Structured logging configuration.

structlog renders JSON events through the stdlib root logger. Every event
passes through SensitiveDataRedactor first: credentials never reach the
output, and customer contact details are masked wherever they appear,
including inside logged provider response bodies.
"""
import logging
import re
import sys
from typing import Any, Iterable, List, Optional, Tuple

import structlog
from pythonjsonlogger import jsonlogger

from settlement.config import Settings, get_settings

REDACTED = "[redacted]"

SECRET_FIELDS = frozenset(
    {
        "authorization",
        "apikey",
        "api_key",
        "secret_key",
        "paychangu_secret_key",
        "paychangu_webhook_secret",
        "webhook_secret",
        "signature",
        "token",
        "password",
    }
)
CONTACT_FIELDS = frozenset({"email", "phone", "phone_number", "phonenumber", "mobile"})
NAME_FIELDS = frozenset({"first_name", "last_name", "firstname", "lastname", "customer_name"})

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_MW_PHONE_RE = re.compile(r"(?<!\d)(?:\+?265|0)\d{9}(?!\d)")
_BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")

# Nested provider payloads are scrubbed this deep
_MAX_DEPTH = 6


def mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not local or not domain:
        return REDACTED
    return f"{local[0]}***@{domain}"


def mask_phone(value: Any) -> str:
    digits = re.sub(r"\D", "", str(value))
    if len(digits) < 7:
        return REDACTED
    return f"***{digits[-4:]}"


class SensitiveDataRedactor:
    """
    structlog processor masking secrets and customer contact details.

    - Fields named like credentials are replaced outright
    - Email and phone fields keep just enough to correlate a support ticket
    - Free text (errors, provider bodies) has the configured secrets,
      bearer tokens, email addresses and Malawian phone numbers masked
    """

    def __init__(self, secrets: Iterable[Optional[str]] = ()):
        # Short values would mask unrelated substrings
        self.secrets: Tuple[str, ...] = tuple(s for s in secrets if s and len(s) >= 8)

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        return {
            key: value if key == "event" else self._field(key, value, 0)
            for key, value in event_dict.items()
        }

    def _field(self, key: Any, value: Any, depth: int) -> Any:
        if value is None:
            return None
        name = str(key).lower()
        if name in SECRET_FIELDS:
            return REDACTED
        if name in CONTACT_FIELDS:
            text = str(value)
            return mask_email(text) if "@" in text else mask_phone(text)
        if name in NAME_FIELDS:
            return f"{str(value)[:1]}***"
        return self._value(value, depth)

    def _value(self, value: Any, depth: int) -> Any:
        if depth >= _MAX_DEPTH:
            return value
        if isinstance(value, dict):
            return {k: self._field(k, v, depth + 1) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._value(v, depth + 1) for v in value]
        if isinstance(value, str):
            return self._text(value)
        return value

    def _text(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        text = _BEARER_RE.sub(f"Bearer {REDACTED}", text)
        text = _EMAIL_RE.sub(lambda m: mask_email(m.group(0)), text)
        return _MW_PHONE_RE.sub(lambda m: mask_phone(m.group(0)), text)


def build_processors(settings: Settings) -> List[Any]:
    """structlog processor chain, ending in the JSON renderer."""

    def add_app_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        SensitiveDataRedactor(
            [
                settings.paychangu_secret_key,
                settings.paychangu_webhook_secret,
                settings.identity_api_key,
            ]
        ),
        add_app_context,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the JSON root handler."""
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # httpx logs full request URLs at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        webhook_signing=settings.webhook_signing_enabled,
    )
