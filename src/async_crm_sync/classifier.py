# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error classification for failed CRM pushes.

``classify`` turns a raised error (or its message) into an ErrorAnalysis by
ordered, case-insensitive substring matching. Categories share vocabulary
("invalid" shows up in credential, field and validation errors alike), so
the checks run in a fixed precedence and the first match wins:

1. credential vocabulary (expired vs. invalid)
2. rate limiting
3. network
4. remote server errors
5. field mapping, unless the message calls itself a validation failure
6. validation
7. unknown

The function is pure: no I/O, no randomness. Jittered delays are computed
later by the scheduler, which knows the live retry count.

Example:
    >>> analysis = classify("rate limit exceeded, 429")
    >>> analysis.category
    <ErrorCategory.RATE_LIMIT: 'rate_limit'>
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import ErrorAnalysis, ErrorCategory, RetryConfig
from .retry_policy import RETRY_POLICIES, SEVERITIES, SUGGESTED_ACTIONS, get_policy

_CREDENTIAL_TERMS = ("access_token", "unauthorized", "authentication", "oauth")
_EXPIRED_TERMS = ("expired", "invalid_grant")
_RATE_LIMIT_TERMS = ("rate limit", "too many requests", "quota exceeded", "429")
_NETWORK_TERMS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "enotfound",
    "econnreset",
    "econnrefused",
    "etimedout",
    "eai_again",
)
_SERVER_TERMS = ("server error", "internal server", "500", "502", "503")
_FIELD_QUALIFIERS = ("invalid", "missing", "mapping")
_VALIDATION_TERMS = ("validation", "required", "invalid format", "bad request")

# HTTP statuses carried on exceptions are folded into the text as hints.
_STATUS_HINTS = {
    400: "bad request",
    401: "unauthorized",
    429: "429 too many requests",
    500: "500 internal server error",
    502: "502 server error",
    503: "503 server error",
}


def error_message(error: BaseException | str) -> str:
    """Return a human-readable message for ``error``.

    Exceptions with an empty message are described by their class name.
    """
    if isinstance(error, BaseException):
        text = str(error)
        return text or error.__class__.__name__
    return str(error)


def _haystack(error: BaseException | str) -> str:
    parts = [error_message(error)]
    if isinstance(error, BaseException):
        status = getattr(error, "status", None) or getattr(error, "status_code", None)
        if isinstance(status, int) and status in _STATUS_HINTS:
            parts.append(_STATUS_HINTS[status])
        if isinstance(error, TimeoutError):
            parts.append("timeout")
        elif isinstance(error, ConnectionError):
            parts.append("connection")
    return " ".join(parts).lower()


def _contains_any(text: str, terms: tuple[str, ...]) -> bool:
    return any(term in text for term in terms)


def match_category(text: str) -> ErrorCategory:
    """Map lower-cased error text to a category using the fixed precedence."""
    if _contains_any(text, _CREDENTIAL_TERMS):
        if _contains_any(text, _EXPIRED_TERMS):
            return ErrorCategory.CREDENTIAL_EXPIRED
        return ErrorCategory.CREDENTIAL_INVALID
    if _contains_any(text, _RATE_LIMIT_TERMS):
        return ErrorCategory.RATE_LIMIT
    if _contains_any(text, _NETWORK_TERMS):
        return ErrorCategory.NETWORK
    if _contains_any(text, _SERVER_TERMS):
        return ErrorCategory.REMOTE_SERVER_ERROR
    # A message that names itself a validation failure stays validation.
    if "field" in text and _contains_any(text, _FIELD_QUALIFIERS) and "validation" not in text:
        return ErrorCategory.FIELD_MAPPING
    if _contains_any(text, _VALIDATION_TERMS):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def analysis_for(
    category: ErrorCategory,
    registry: Mapping[ErrorCategory, RetryConfig] | None = None,
) -> ErrorAnalysis:
    """Build the ErrorAnalysis of a known category from the policy tables."""
    policy = get_policy(category, registry)
    return ErrorAnalysis(
        category=category,
        is_retryable=policy.max_retries > 0,
        retry_after_seconds=policy.base_delay_ms // 1000,
        max_retries=policy.max_retries,
        suggested_action=SUGGESTED_ACTIONS[category],
        severity=SEVERITIES[category],
    )


def classify(
    error: BaseException | str,
    context: dict[str, Any] | None = None,
    *,
    registry: Mapping[ErrorCategory, RetryConfig] | None = None,
) -> ErrorAnalysis:
    """Classify an error into an ErrorAnalysis.

    Args:
        error: The raised exception or its message. ``status`` /
            ``status_code`` attributes on exceptions contribute to matching.
        context: Caller context; accepted for auditing symmetry, it does not
            influence the result.
        registry: Optional policy table; defaults to RETRY_POLICIES.

    Returns:
        A new, immutable ErrorAnalysis.
    """
    category = match_category(_haystack(error))
    return analysis_for(category, RETRY_POLICIES if registry is None else registry)
