import pytest

from async_crm_sync.classifier import analysis_for, classify, error_message
from async_crm_sync.errors import CrmApiError
from async_crm_sync.models import ErrorCategory, RetryConfig, Severity
from async_crm_sync.retry_policy import RETRY_POLICIES, build_registry


@pytest.mark.parametrize(
    "message,category",
    [
        ("OAuth access_token expired", ErrorCategory.CREDENTIAL_EXPIRED),
        ("oauth error: invalid_grant", ErrorCategory.CREDENTIAL_EXPIRED),
        ("INVALID_OAUTHTOKEN", ErrorCategory.CREDENTIAL_INVALID),
        ("401 Unauthorized", ErrorCategory.CREDENTIAL_INVALID),
        ("Rate limit exceeded", ErrorCategory.RATE_LIMIT),
        ("API quota exceeded for today", ErrorCategory.RATE_LIMIT),
        ("HTTP 429", ErrorCategory.RATE_LIMIT),
        ("connect ECONNREFUSED 10.0.0.1:443", ErrorCategory.NETWORK),
        ("getaddrinfo ENOTFOUND www.zohoapis.eu", ErrorCategory.NETWORK),
        ("Request timed out", ErrorCategory.NETWORK),
        ("502 Bad Gateway", ErrorCategory.REMOTE_SERVER_ERROR),
        ("Internal Server Error", ErrorCategory.REMOTE_SERVER_ERROR),
        ("Invalid field Last_Name", ErrorCategory.FIELD_MAPPING),
        ("Field mapping not found for Lead_Score", ErrorCategory.FIELD_MAPPING),
        ("Invalid format for date", ErrorCategory.VALIDATION),
        ("Email is required", ErrorCategory.VALIDATION),
        ("Something odd happened", ErrorCategory.UNKNOWN),
    ],
)
def test_categories(message, category):
    assert classify(message).category is category


def test_precedence_credentials_over_rate_limit():
    # Both vocabularies present: credentials are checked first.
    assert classify("unauthorized: rate limit on token endpoint").category is ErrorCategory.CREDENTIAL_INVALID


def test_precedence_rate_limit_over_network():
    assert classify("connection throttled: too many requests").category is ErrorCategory.RATE_LIMIT


def test_precedence_network_over_server():
    assert classify("network failure after 503").category is ErrorCategory.NETWORK


def test_precedence_server_over_field():
    assert classify("internal server error: invalid field").category is ErrorCategory.REMOTE_SERVER_ERROR


def test_validation_message_naming_a_field_stays_validation():
    analysis = classify("validation failed: required field missing")
    assert analysis.category is ErrorCategory.VALIDATION
    assert analysis.is_retryable is False


def test_matching_is_case_insensitive():
    assert classify("RATE LIMIT EXCEEDED").category is ErrorCategory.RATE_LIMIT


def test_status_attribute_contributes():
    assert classify(CrmApiError("CRM API error", status=429)).category is ErrorCategory.RATE_LIMIT
    assert classify(CrmApiError("CRM API error", status=503)).category is ErrorCategory.REMOTE_SERVER_ERROR
    assert classify(CrmApiError("CRM API error", status=401)).category is ErrorCategory.CREDENTIAL_INVALID


def test_builtin_exception_types_contribute():
    assert classify(TimeoutError()).category is ErrorCategory.NETWORK
    assert classify(ConnectionResetError()).category is ErrorCategory.NETWORK


def test_error_message_uses_class_name_when_empty():
    assert error_message(TimeoutError()) == "TimeoutError"
    assert error_message(ValueError("boom")) == "boom"
    assert error_message("plain") == "plain"


def test_rate_limit_analysis_fields():
    analysis = classify("rate limit exceeded, 429")
    assert analysis.category is ErrorCategory.RATE_LIMIT
    assert analysis.is_retryable is True
    assert analysis.max_retries == 5
    assert analysis.retry_after_seconds == 60
    assert analysis.severity is Severity.MEDIUM


def test_credential_severities():
    assert classify("access_token expired").severity is Severity.HIGH
    assert classify("authentication failed").severity is Severity.CRITICAL


def test_classify_is_pure():
    first = classify("Connection reset by peer", {"attempt": 1})
    second = classify("Connection reset by peer", {"attempt": 2})
    assert first == second


@pytest.mark.parametrize("category", list(ErrorCategory))
def test_retryable_iff_policy_allows_retries(category):
    analysis = analysis_for(category)
    assert analysis.is_retryable == (RETRY_POLICIES[category].max_retries > 0)


def test_custom_registry_changes_retryability():
    registry = build_registry({"unknown": {"max_retries": 0}})
    analysis = classify("mystery", registry=registry)
    assert analysis.category is ErrorCategory.UNKNOWN
    assert analysis.is_retryable is False
    assert isinstance(registry[ErrorCategory.UNKNOWN], RetryConfig)
