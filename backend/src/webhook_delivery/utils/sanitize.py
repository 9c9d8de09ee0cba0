"""Sanitization of error text before it is stored on a delivery row.

Delivery errors end up in ``last_error``, which is shown to account owners
through the status API. Raw exception text from httpx or the network stack
can carry internal URLs, credentials embedded in connection strings, cloud
resource identifiers and private addresses; none of that may leave the
service.
"""
import re

MAX_ERROR_LENGTH = 1000

# Order matters: credentials-bearing connection strings and ARNs are
# replaced before the generic URL pattern can partially match them.
_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    # postgres://user:pass@db:5432/app, redis://:secret@cache:6379/0, ...
    (re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.\-]*://[^\s/@]*:[^\s/@]*@[^\s]+"), "[connection]"),
    (re.compile(r"\b(?:postgres(?:ql)?|mysql|mariadb|mongodb(?:\+srv)?|redis|rediss|amqps?|sqlite)(?:\+\w+)?://[^\s]+", re.IGNORECASE), "[connection]"),
    (re.compile(r"\barn:aws[a-zA-Z-]*:[a-zA-Z0-9\-]*:[a-z0-9\-]*:\d{0,12}:[^\s,;\"']+"), "[arn]"),
    (re.compile(r"\b(?:https?|wss?|ftp)://[^\s\"'<>]+", re.IGNORECASE), "[url]"),
    # socket errors render the peer as a tuple: ('10.0.0.5', 5432) or ('::1', 5432, 0, 0)
    (re.compile(r"\(\s*'[0-9a-fA-F.:]+'\s*,\s*\d{1,5}(?:\s*,\s*\d+)*\s*\)"), "[address]"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}:\d{1,5}\b"), "[address]"),
    (re.compile(r"\b[a-zA-Z0-9\-]+(?:\.[a-zA-Z0-9\-]+)*\.(?:internal|local|amazonaws\.com)(?::\d{1,5})?\b"), "[host]"),
]


def sanitize_error_message(message: str | None, max_length: int = MAX_ERROR_LENGTH) -> str:
    """
    Strip infrastructure details from an error message.

    Args:
        message: Raw error text (exception message, HTTP status line, ...)
        max_length: Maximum length of the returned text

    Returns:
        Sanitized message, truncated to ``max_length`` characters
    """
    if not message:
        return ""

    sanitized = message
    for pattern, replacement in _REDACTIONS:
        sanitized = pattern.sub(replacement, sanitized)

    return sanitized[:max_length]
