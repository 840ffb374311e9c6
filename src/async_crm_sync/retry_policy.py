# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Static retry policy registry.

Every error category the classifier can produce has exactly one entry in
each table below. The tables are data: adding a category means adding rows
here, not branching logic elsewhere.

Attributes:
    RETRY_POLICIES: Read-only mapping of category to RetryConfig.
    SEVERITIES: Fixed severity attached to each category.
    SUGGESTED_ACTIONS: Operator-facing hint returned in ErrorAnalysis.
    RECOVERY_ACTIONS_TAKEN: Audit description of the recovery action.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import ErrorCategory, RetryConfig, Severity

_DEFAULT_POLICIES: dict[ErrorCategory, RetryConfig] = {
    ErrorCategory.CREDENTIAL_EXPIRED: RetryConfig(
        max_retries=3, base_delay_ms=1_000, max_delay_ms=5_000, backoff_multiplier=1.5, jitter_enabled=True
    ),
    ErrorCategory.CREDENTIAL_INVALID: RetryConfig(
        max_retries=1, base_delay_ms=5_000, max_delay_ms=10_000, backoff_multiplier=1.0, jitter_enabled=False
    ),
    ErrorCategory.RATE_LIMIT: RetryConfig(
        max_retries=5, base_delay_ms=60_000, max_delay_ms=300_000, backoff_multiplier=2.0, jitter_enabled=True
    ),
    ErrorCategory.NETWORK: RetryConfig(
        max_retries=5, base_delay_ms=2_000, max_delay_ms=30_000, backoff_multiplier=2.0, jitter_enabled=True
    ),
    ErrorCategory.REMOTE_SERVER_ERROR: RetryConfig(
        max_retries=3, base_delay_ms=5_000, max_delay_ms=30_000, backoff_multiplier=2.0, jitter_enabled=True
    ),
    ErrorCategory.FIELD_MAPPING: RetryConfig(
        max_retries=2, base_delay_ms=1_000, max_delay_ms=5_000, backoff_multiplier=2.0, jitter_enabled=False
    ),
    # Non-retryable: bad data does not fix itself.
    ErrorCategory.VALIDATION: RetryConfig(
        max_retries=0, base_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0, jitter_enabled=False
    ),
    ErrorCategory.UNKNOWN: RetryConfig(
        max_retries=2, base_delay_ms=10_000, max_delay_ms=60_000, backoff_multiplier=3.0, jitter_enabled=True
    ),
}

RETRY_POLICIES: Mapping[ErrorCategory, RetryConfig] = MappingProxyType(_DEFAULT_POLICIES)

SEVERITIES: Mapping[ErrorCategory, Severity] = MappingProxyType(
    {
        ErrorCategory.CREDENTIAL_EXPIRED: Severity.HIGH,
        ErrorCategory.CREDENTIAL_INVALID: Severity.CRITICAL,
        ErrorCategory.RATE_LIMIT: Severity.MEDIUM,
        ErrorCategory.NETWORK: Severity.MEDIUM,
        ErrorCategory.REMOTE_SERVER_ERROR: Severity.HIGH,
        ErrorCategory.FIELD_MAPPING: Severity.LOW,
        ErrorCategory.VALIDATION: Severity.LOW,
        ErrorCategory.UNKNOWN: Severity.MEDIUM,
    }
)

SUGGESTED_ACTIONS: Mapping[ErrorCategory, str] = MappingProxyType(
    {
        ErrorCategory.CREDENTIAL_EXPIRED: "Automatically refreshing CRM credentials",
        ErrorCategory.CREDENTIAL_INVALID: "Manual re-authentication required",
        ErrorCategory.RATE_LIMIT: "Backing off and retrying after rate limit period",
        ErrorCategory.NETWORK: "Retrying with exponential backoff",
        ErrorCategory.REMOTE_SERVER_ERROR: "CRM server issue - retrying after delay",
        ErrorCategory.FIELD_MAPPING: "Refreshing field cache and retrying",
        ErrorCategory.VALIDATION: "Check form data format - manual intervention needed",
        ErrorCategory.UNKNOWN: "Unknown error type - conservative retry strategy",
    }
)

RECOVERY_ACTIONS_TAKEN: Mapping[ErrorCategory, str] = MappingProxyType(
    {
        ErrorCategory.CREDENTIAL_EXPIRED: "Attempted credential refresh",
        ErrorCategory.CREDENTIAL_INVALID: "Marked for manual re-authentication",
        ErrorCategory.RATE_LIMIT: "Added to rate limit queue",
        ErrorCategory.NETWORK: "Scheduled network error retry",
        ErrorCategory.REMOTE_SERVER_ERROR: "Scheduled server error retry",
        ErrorCategory.FIELD_MAPPING: "Triggered field metadata cache refresh",
        ErrorCategory.VALIDATION: "Marked for manual validation review",
        ErrorCategory.UNKNOWN: "Applied conservative retry strategy",
    }
)


def get_policy(
    category: ErrorCategory | str,
    registry: Mapping[ErrorCategory, RetryConfig] | None = None,
) -> RetryConfig:
    """Return the retry policy for ``category``.

    Unrecognised category names resolve to the unknown-category policy.
    """
    table = RETRY_POLICIES if registry is None else registry
    try:
        key = ErrorCategory(category)
    except ValueError:
        key = ErrorCategory.UNKNOWN
    return table[key]


def max_retry_bound(registry: Mapping[ErrorCategory, RetryConfig] | None = None) -> int:
    """Largest ``max_retries`` across all policies of ``registry``."""
    table = RETRY_POLICIES if registry is None else registry
    return max(policy.max_retries for policy in table.values())


def build_registry(
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
) -> Mapping[ErrorCategory, RetryConfig]:
    """Merge per-category overrides onto the built-in policies.

    Args:
        overrides: Mapping of category name to a partial set of RetryConfig
            fields, typically parsed from ``[retry.<category>]`` sections.

    Returns:
        A read-only mapping covering every ErrorCategory.

    Raises:
        ConfigurationError: If a category name is unknown or a value is invalid.
    """
    policies = dict(_DEFAULT_POLICIES)
    for name, values in (overrides or {}).items():
        try:
            category = ErrorCategory(name)
        except ValueError:
            raise ConfigurationError(f"Unknown retry category '{name}'") from None
        merged = {**policies[category].model_dump(), **dict(values)}
        try:
            policies[category] = RetryConfig(**merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid retry policy for '{name}': {exc}") from exc
    missing = set(ErrorCategory) - set(policies)
    if missing:  # pragma: no cover - guarded by _DEFAULT_POLICIES
        raise ConfigurationError(f"Retry registry missing categories: {sorted(c.value for c in missing)}")
    return MappingProxyType(policies)
