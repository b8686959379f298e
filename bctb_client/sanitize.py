"""PII redaction for query results (profiles with ``removePII``)."""

from __future__ import annotations

import re
from typing import Any

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_IPV4 = re.compile(r"\b(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})\b")
_GUID = re.compile(
    r"\b([0-9a-f]{8})-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_PHONE = re.compile(r"\b(?:\+?1[-.]?)?\(?([0-9]{3})\)?[-.]?([0-9]{3})[-.]?([0-9]{4})\b")
_URL_CREDENTIALS = re.compile(r"\b(https?://)([^:/\s]+):([^@\s]+)@")


def redact_emails(text: str) -> str:
    return _EMAIL.sub("[EMAIL_REDACTED]", text)


def mask_ips(text: str) -> str:
    """Keep the first two octets of IPv4 addresses."""
    return _IPV4.sub(r"\1.\2.xxx.xxx", text)


def mask_guids(text: str) -> str:
    """Keep the first 8 characters of GUIDs."""
    return _GUID.sub(r"\1-xxxx-xxxx-xxxx-xxxxxxxxxxxx", text)


def redact_phones(text: str) -> str:
    return _PHONE.sub("[PHONE_REDACTED]", text)


def redact_url_credentials(text: str) -> str:
    return _URL_CREDENTIALS.sub(r"\1[USER_REDACTED]:[PASS_REDACTED]@", text)


def sanitize_text(text: str) -> str:
    """Apply every redaction rule, in a fixed order."""
    if not text:
        return text
    text = redact_emails(text)
    text = mask_ips(text)
    text = mask_guids(text)
    text = redact_phones(text)
    return redact_url_credentials(text)


def sanitize_object(value: Any) -> Any:
    """
    Recursively sanitize every string in a JSON-like value.

    Mappings and lists are copied; numbers, booleans and None pass through.
    """
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_object(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_object(item) for item in value]
    return value
