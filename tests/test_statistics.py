from async_crm_sync.models import ErrorCategory, ProcessingStatus, Submission, SyncStatus
from async_crm_sync.statistics import compute_error_statistics, error_category_of


def _sub(sid, **kwargs):
    return Submission(id=sid, form_name="contact", **kwargs)


def test_empty_input():
    stats = compute_error_statistics([])
    assert stats.total_submissions == 0
    assert stats.retry_success_rate == 0.0
    assert stats.average_retry_attempts == 0.0
    assert stats.errors_by_category == {}


def test_rollup():
    submissions = [
        _sub("a", sync_status=SyncStatus.SYNCED, processing_status=ProcessingStatus.COMPLETED),
        _sub("b", sync_status=SyncStatus.SYNCED, processing_status=ProcessingStatus.COMPLETED, retry_count=2),
        _sub(
            "c",
            sync_status=SyncStatus.FAILED,
            processing_status=ProcessingStatus.FAILED,
            retry_count=5,
            last_error="Rate limit exceeded",
        ),
        _sub(
            "d",
            sync_status=SyncStatus.FAILED,
            processing_status=ProcessingStatus.FAILED,
            last_error="Validation failed: required field missing: email",
        ),
        _sub("e", retry_count=1, last_error="Connection reset"),
    ]
    stats = compute_error_statistics(submissions)

    assert stats.total_submissions == 5
    assert stats.total_errors == 3
    assert stats.by_sync_status == {"synced": 2, "failed": 2, "pending": 1}
    assert stats.by_processing_status == {"completed": 2, "failed": 2, "pending": 1}
    # Only failed submissions are bucketed by category.
    assert stats.errors_by_category == {"rate_limit": 1, "validation": 1}
    # Retried and settled: b (synced) and c (failed); e is still pending.
    assert stats.retry_success_rate == 50.0
    assert stats.average_retry_attempts == round((2 + 5 + 1) / 3, 2)


def test_recorded_category_wins_over_reclassification():
    submission = _sub(
        "x",
        sync_status=SyncStatus.FAILED,
        last_error="CRITICAL: something (Max retries exceeded)",
        error_category=ErrorCategory.CREDENTIAL_INVALID,
    )
    assert error_category_of(submission) is ErrorCategory.CREDENTIAL_INVALID
    assert compute_error_statistics([submission]).errors_by_category == {"credential_invalid": 1}


def test_reclassifies_when_category_not_recorded():
    assert error_category_of(_sub("y", last_error="502 Bad Gateway")) is ErrorCategory.REMOTE_SERVER_ERROR
    assert error_category_of(_sub("z")) is None


def test_does_not_mutate_input():
    submission = _sub("s", sync_status=SyncStatus.FAILED, last_error="timeout", retry_count=1)
    before = submission.model_dump()
    compute_error_statistics([submission])
    assert submission.model_dump() == before
