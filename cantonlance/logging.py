"""
Logging utilities for cantonlance with credential masking.

Ledger tokens travel in Authorization headers and are stored in identity
files, so everything that reaches a log record goes through the masking
helpers here first.

Usage:
    import logging
    from cantonlance.logging import log_request, log_response

    logger = logging.getLogger(__name__)
    log_request(logger, "POST", url, headers, body)
    log_response(logger, 200, body, duration_ms)
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

MASK_PATTERN = "***"
MAX_LOG_MESSAGE_LENGTH = 2_000
MAX_BODY_LOG_LENGTH = 1_000

SENSITIVE_FIELDS = frozenset({
    "token",
    "access_token",
    "accessToken",
    "authorization",
    "password",
    "secret",
    "credential",
    "credentials",
})

_SENSITIVE_HEADERS = frozenset({
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
})

_INLINE_PATTERNS = [
    (r"(Bearer\s+)[a-zA-Z0-9._:-]+", r"\1***"),
    (r"(https?://)[^:/]+:[^@]+@", r"\1***:***@"),
    (r"\beyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+\b", "***JWT***"),
]


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, keeping a few characters at each end."""
    if not value or len(value) <= show_chars * 2:
        return MASK_PATTERN
    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return key in SENSITIVE_FIELDS or key_lower in SENSITIVE_FIELDS or any(
        sensitive in key_lower for sensitive in ("secret", "password", "token", "credential")
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive values in a data structure.

    Returns a copy; the input is never modified.
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)) or (additional_fields and key in additional_fields):
                result[key] = MASK_PATTERN
            else:
                result[key] = mask_sensitive_data(value, additional_fields, _depth + 1, _max_depth)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


def _mask_inline_patterns(text: str) -> str:
    if len(text) > MAX_LOG_MESSAGE_LENGTH:
        text = text[:MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"
    for pattern, replacement in _INLINE_PATTERNS:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)
    return text


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive HTTP headers."""
    return {
        key: MASK_PATTERN if key.lower() in _SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def _truncated_json(body: Any) -> str:
    body_str = json.dumps(mask_sensitive_data(body), default=str)
    if len(body_str) > MAX_BODY_LOG_LENGTH:
        body_str = body_str[:MAX_BODY_LOG_LENGTH] + "..."
    return body_str


def log_request(
    logger: logging.Logger,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[Any] = None,
    party: Optional[str] = None,
) -> None:
    """Log an outgoing ledger request at DEBUG."""
    log_data: Dict[str, Any] = {
        "direction": "request",
        "method": method,
        "url": _mask_inline_patterns(url),
    }
    if party:
        log_data["party"] = party
    if headers:
        log_data["headers"] = mask_headers(headers)
    if body is not None:
        log_data["body"] = _truncated_json(body)

    logger.debug("HTTP %s %s", method, log_data["url"], extra={"data": log_data})


def log_response(
    logger: logging.Logger,
    status_code: int,
    body: Optional[Any] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> None:
    """Log a ledger response; non-success statuses at WARNING."""
    log_data: Dict[str, Any] = {
        "direction": "response",
        "status_code": status_code,
    }
    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)
    if body is not None:
        log_data["body"] = _truncated_json(body)
    if error:
        log_data["error"] = _mask_inline_patterns(error)

    if status_code >= 400 or error:
        logger.warning("HTTP response %s", status_code, extra={"data": log_data})
    else:
        logger.debug("HTTP response %s", status_code, extra={"data": log_data})
