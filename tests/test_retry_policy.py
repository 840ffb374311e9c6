from types import MappingProxyType

import pytest
from pydantic import ValidationError

from async_crm_sync.errors import ConfigurationError
from async_crm_sync.models import ErrorCategory, RetryConfig
from async_crm_sync.retry_policy import (
    RECOVERY_ACTIONS_TAKEN,
    RETRY_POLICIES,
    SEVERITIES,
    SUGGESTED_ACTIONS,
    build_registry,
    get_policy,
    max_retry_bound,
)


def test_registry_is_exhaustive():
    for table in (RETRY_POLICIES, SEVERITIES, SUGGESTED_ACTIONS, RECOVERY_ACTIONS_TAKEN):
        assert set(table) == set(ErrorCategory)


def test_representative_values():
    rate = RETRY_POLICIES[ErrorCategory.RATE_LIMIT]
    assert (rate.max_retries, rate.base_delay_ms, rate.max_delay_ms) == (5, 60_000, 300_000)
    assert rate.backoff_multiplier == 2.0 and rate.jitter_enabled is True

    validation = RETRY_POLICIES[ErrorCategory.VALIDATION]
    assert validation.max_retries == 0
    assert validation.jitter_enabled is False

    unknown = RETRY_POLICIES[ErrorCategory.UNKNOWN]
    assert (unknown.max_retries, unknown.backoff_multiplier) == (2, 3.0)


def test_registry_is_read_only():
    with pytest.raises(TypeError):
        RETRY_POLICIES[ErrorCategory.NETWORK] = RetryConfig(max_retries=1, base_delay_ms=1, max_delay_ms=1)
    with pytest.raises(ValidationError):
        RETRY_POLICIES[ErrorCategory.NETWORK].max_retries = 99


def test_get_policy_falls_back_to_unknown():
    assert get_policy("network") is RETRY_POLICIES[ErrorCategory.NETWORK]
    assert get_policy("not-a-category") is RETRY_POLICIES[ErrorCategory.UNKNOWN]


def test_max_retry_bound():
    assert max_retry_bound() == 5
    assert max_retry_bound(build_registry({"network": {"max_retries": 9}})) == 9


def test_build_registry_merges_partial_overrides():
    registry = build_registry({"rate_limit": {"max_retries": 8, "max_delay_ms": 600_000}})
    assert isinstance(registry, MappingProxyType)
    rate = registry[ErrorCategory.RATE_LIMIT]
    assert rate.max_retries == 8
    assert rate.max_delay_ms == 600_000
    assert rate.base_delay_ms == 60_000
    assert registry[ErrorCategory.NETWORK] == RETRY_POLICIES[ErrorCategory.NETWORK]
    # Built-in table untouched.
    assert RETRY_POLICIES[ErrorCategory.RATE_LIMIT].max_retries == 5


def test_build_registry_rejects_unknown_category():
    with pytest.raises(ConfigurationError, match="Unknown retry category"):
        build_registry({"smtp": {"max_retries": 1}})


def test_build_registry_rejects_invalid_values():
    with pytest.raises(ConfigurationError, match="Invalid retry policy"):
        build_registry({"network": {"max_retries": -1}})
    with pytest.raises(ConfigurationError):
        build_registry({"network": {"backoff_multiplier": 0.5}})
