"""Sanitization of queued payloads and error messages.

Queued operations sit in local storage for up to a day and their error
messages end up in status broadcasts shown to users, so both pass through
here before they are persisted.
"""

import re
from typing import Any

MAX_TEXT_LENGTH = 10_000
MAX_ERROR_LENGTH = 200

# Control characters other than tab, newline and carriage return
CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

DANGEROUS_PATTERNS = [
    re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<iframe\b[^>]*>.*?</iframe\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
]

FILE_PATH_PATTERN = re.compile(r"file://.*?[/\\]")
PORT_PATTERN = re.compile(r"localhost:\d+")
IP_PATTERN = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def sanitize_text(value: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Strip control characters and script injection patterns from a string.

    Args:
        value: Text to clean
        max_length: Length cap applied before pattern removal

    Returns:
        Cleaned text
    """
    text = value[:max_length]
    text = CONTROL_CHARS_PATTERN.sub("", text)
    for pattern in DANGEROUS_PATTERNS:
        text = pattern.sub("", text)
    return text


def sanitize_payload(data: Any) -> Any:
    """Recursively sanitize every string inside a payload.

    Dictionary keys are cleaned as well as values. Non-string scalars are
    returned unchanged.
    """
    if isinstance(data, str):
        return sanitize_text(data)
    if isinstance(data, list):
        return [sanitize_payload(item) for item in data]
    if isinstance(data, dict):
        return {
            sanitize_text(str(key)): sanitize_payload(value)
            for key, value in data.items()
        }
    return data


def sanitize_error_message(error: BaseException | str | None) -> str:
    """Reduce an error to a message that is safe to persist and display.

    Removes file paths, port numbers, IP addresses and email addresses, and
    caps the length.
    """
    if error is None:
        return "Unknown error occurred"

    message = str(error)
    if not message and isinstance(error, BaseException):
        message = type(error).__name__
    message = FILE_PATH_PATTERN.sub("", message)
    message = PORT_PATTERN.sub("localhost", message)
    message = IP_PATTERN.sub("[IP]", message)
    message = EMAIL_PATTERN.sub("[EMAIL]", message)
    message = message[:MAX_ERROR_LENGTH]

    return message or "An error occurred while processing your request"
