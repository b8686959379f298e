"""Sanitization and hashing helpers for usage telemetry."""

from __future__ import annotations

import hashlib
import re
import traceback
import uuid
from dataclasses import dataclass

_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"InstrumentationKey=[^;\s]+", re.IGNORECASE), "InstrumentationKey=<redacted>"),
    (re.compile(r"password=[^&\s;]+", re.IGNORECASE), "password=<redacted>"),
    (re.compile(r"apiKey=[^&\s;]+", re.IGNORECASE), "apiKey=<redacted>"),
    (re.compile(r"client_secret=[^&\s;]+", re.IGNORECASE), "client_secret=<redacted>"),
]

_EMAIL = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
_BEARER = re.compile(r"bearer\s+[\w.~+/=-]+", re.IGNORECASE)
_IP = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
_GUID = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE)
_USER_PATHS = [
    re.compile(r"[A-Z]:\\Users\\[^\\\s\"']+", re.IGNORECASE),
    re.compile(r"/home/[^/\s\"']+"),
    re.compile(r"/Users/[^/\s\"']+"),
]
_WINDOWS_PATH = re.compile(r"[A-Z]:\\[^\s\"']+", re.IGNORECASE)


def generate_guid() -> str:
    return str(uuid.uuid4())


def hash_value(value: str) -> str:
    """Pseudonymous identifier: first 16 hex chars of the SHA-256."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _redact_secrets(text: str) -> str:
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_stack_trace(stack: str, repo_root: str | None = None) -> str:
    """
    Strip PII from a formatted stack trace.

    ``repo_root`` (if given) is replaced with ``<repo>`` so paths stay
    relative; user home directories become ``<user-path>``.
    """
    sanitized = stack
    if repo_root:
        sanitized = re.sub(re.escape(repo_root), "<repo>", sanitized, flags=re.IGNORECASE)
    for pattern in _USER_PATHS:
        sanitized = pattern.sub("<user-path>", sanitized)
    sanitized = _redact_secrets(sanitized)
    sanitized = _EMAIL.sub("<email>", sanitized)
    return sanitized


def sanitize_error_message(message: str) -> str:
    """Strip paths, secrets, tokens, emails, IPs and GUIDs from an error message."""
    sanitized = _WINDOWS_PATH.sub("<path>", message)
    for pattern in _USER_PATHS:
        sanitized = pattern.sub("<path>", sanitized)
    sanitized = _redact_secrets(sanitized)
    sanitized = _BEARER.sub("bearer <redacted>", sanitized)
    sanitized = _EMAIL.sub("<email>", sanitized)
    sanitized = _IP.sub("<ip>", sanitized)
    sanitized = _GUID.sub("<guid>", sanitized)
    return sanitized


_CATEGORIES: list[tuple[str, tuple[str, ...]]] = [
    ("NetworkError", ("network", "econnrefused", "etimedout", "enotfound", "timed out", "connection")),
    ("AuthenticationError", ("auth", "unauthorized", "forbidden", "token")),
    ("QueryError", ("kusto", "query", "syntax error")),
    ("ConfigurationError", ("config", "setting", "invalid")),
    ("PermissionError", ("permission", "access denied", "eacces")),
    ("FileSystemError", ("file", "enoent", "directory")),
]


def categorize_error(error: BaseException) -> str:
    """Coarse bucket for an exception, for aggregation in dashboards."""
    message = str(error).lower()
    for category, needles in _CATEGORIES:
        if any(needle in message for needle in needles):
            return category
    return type(error).__name__ or "UnknownError"


def format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def error_signature(error: BaseException, repo_root: str | None = None) -> str:
    """Error type plus a hash of the sanitized stack; identical failures share a signature."""
    stack = sanitize_stack_trace(format_stack(error), repo_root)
    return f"{type(error).__name__}:{hash_value(stack)}"


def create_error_properties(error: BaseException, repo_root: str | None = None) -> dict[str, str]:
    """Sanitized properties describing an exception."""
    stack = sanitize_stack_trace(format_stack(error), repo_root)
    return {
        "errorType": type(error).__name__,
        "errorCategory": categorize_error(error),
        "errorMessage": sanitize_error_message(str(error)),
        "stackTrace": stack,
        "stackHash": hash_value(stack),
    }


@dataclass
class CorrelationContext:
    """Ties together the telemetry emitted for one logical operation."""
    correlation_id: str
    operation_name: str | None = None
    parent_id: str | None = None

    @classmethod
    def create(cls, operation_name: str, parent_id: str | None = None) -> CorrelationContext:
        return cls(correlation_id=generate_guid(), operation_name=operation_name, parent_id=parent_id)

    def to_properties(self) -> dict[str, str]:
        props = {"correlationId": self.correlation_id}
        if self.operation_name:
            props["operationName"] = self.operation_name
        if self.parent_id:
            props["parentId"] = self.parent_id
        return props
