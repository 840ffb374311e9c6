# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised by the CRM submission sync service."""

from __future__ import annotations


class CrmApiError(RuntimeError):
    """Raised by the record service when the CRM rejects or fails a request.

    The HTTP ``status`` (when known) is kept on the exception so the error
    classifier can take it into account alongside the message text.
    """

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class SubmissionNotFoundError(LookupError):
    """Raised internally when a submission vanished from the repository."""

    def __init__(self, submission_id: str):
        super().__init__(f"Submission {submission_id} not found")
        self.submission_id = submission_id


class ConfigurationError(ValueError):
    """Raised when configuration files or retry policy overrides are invalid."""
