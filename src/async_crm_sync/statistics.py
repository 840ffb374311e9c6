# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Read-only rollups over historical submissions."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from pydantic import BaseModel, Field

from .classifier import classify
from .models import ErrorCategory, Submission, SyncStatus


class ErrorStatistics(BaseModel):
    """Aggregate error and retry figures.

    Attributes:
        retry_success_rate: Percentage of retried submissions that ended
            synced, among retried submissions that reached synced or failed.
        average_retry_attempts: Mean retry count over retried submissions.
    """

    total_submissions: int = 0
    total_errors: int = 0
    by_sync_status: dict[str, int] = Field(default_factory=dict)
    by_processing_status: dict[str, int] = Field(default_factory=dict)
    errors_by_category: dict[str, int] = Field(default_factory=dict)
    retry_success_rate: float = 0.0
    average_retry_attempts: float = 0.0


def error_category_of(submission: Submission) -> ErrorCategory | None:
    """Category of a submission's last error, preferring the recorded one."""
    if submission.error_category is not None:
        return submission.error_category
    if submission.last_error:
        return classify(submission.last_error).category
    return None


def compute_error_statistics(submissions: Iterable[Submission]) -> ErrorStatistics:
    """Compute ErrorStatistics without touching the submissions."""
    items = list(submissions)
    by_sync = Counter(item.sync_status.value for item in items)
    by_processing = Counter(item.processing_status.value for item in items)

    categories: Counter[str] = Counter()
    for item in items:
        if item.sync_status is not SyncStatus.FAILED:
            continue
        category = error_category_of(item)
        if category is not None:
            categories[category.value] += 1

    retried = [item for item in items if item.retry_count > 0]
    settled = [item for item in retried if item.is_terminal]
    succeeded = sum(1 for item in settled if item.sync_status is SyncStatus.SYNCED)
    success_rate = round(succeeded / len(settled) * 100, 2) if settled else 0.0
    average = round(sum(item.retry_count for item in retried) / len(retried), 2) if retried else 0.0

    return ErrorStatistics(
        total_submissions=len(items),
        total_errors=sum(1 for item in items if item.last_error or item.sync_status is SyncStatus.FAILED),
        by_sync_status=dict(by_sync),
        by_processing_status=dict(by_processing),
        errors_by_category=dict(categories),
        retry_success_rate=success_rate,
        average_retry_attempts=average,
    )
