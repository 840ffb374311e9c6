import pytest
from pydantic import ValidationError

from async_crm_sync.models import (
    ErrorAnalysis,
    ErrorCategory,
    FormConfiguration,
    RetryConfig,
    Severity,
    Submission,
    SubmissionCreate,
    SubmitFieldConfig,
    SyncStatus,
)


def test_submission_defaults():
    submission = Submission(id="s1", form_name="contact")
    assert submission.target_module == "Leads"
    assert submission.retry_count == 0
    assert submission.sync_status is SyncStatus.PENDING
    assert submission.is_terminal is False
    assert Submission(id="s2", form_name="c", sync_status="failed").is_terminal is True


def test_submission_rejects_negative_retry_count():
    with pytest.raises(ValidationError):
        Submission(id="s1", form_name="contact", retry_count=-1)


def test_submission_create_validation():
    created = SubmissionCreate(form_name="contact", data={"email": "a@b.it"})
    assert created.target_module is None
    with pytest.raises(ValidationError, match="Form data cannot be empty"):
        SubmissionCreate(form_name="contact", data={})
    with pytest.raises(ValidationError):
        SubmissionCreate(form_name="", data={"a": 1})
    with pytest.raises(ValidationError):
        SubmissionCreate(form_name="contact", data={"a": 1}, extra="nope")


def test_retry_config_constraints():
    with pytest.raises(ValidationError):
        RetryConfig(max_retries=-1, base_delay_ms=0, max_delay_ms=0)
    with pytest.raises(ValidationError):
        RetryConfig(max_retries=1, base_delay_ms=0, max_delay_ms=0, backoff_multiplier=0.5)


def test_error_analysis_is_frozen():
    analysis = ErrorAnalysis(
        category=ErrorCategory.NETWORK,
        is_retryable=True,
        retry_after_seconds=2,
        max_retries=5,
        suggested_action="Retrying with exponential backoff",
        severity=Severity.MEDIUM,
    )
    with pytest.raises(ValidationError):
        analysis.max_retries = 0


def test_form_configuration_lead_source():
    assert FormConfiguration(form_name="contact").lead_source == "Form: contact"
    assert FormConfiguration(form_name="contact", lead_source_tag="Expo 2025").lead_source == "Expo 2025"


def test_submit_field_config_max_length_positive():
    assert SubmitFieldConfig(crm_field="Email").max_length is None
    with pytest.raises(ValidationError):
        SubmitFieldConfig(crm_field="Email", max_length=0)
