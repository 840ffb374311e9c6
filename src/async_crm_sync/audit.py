# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Append-only audit trail of submission attempts.

Writes go to an ``AuditSink`` (the persistence layer by default). Recording
never raises: losing an audit line must not turn into a new failure for the
submission being processed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .collaborators import AuditSink
from .logger import get_logger
from .models import AuditLogEntry, AuditOperation, AuditStatus, ErrorCategory


class AuditLog:
    """Thin recording facade over an audit sink."""

    def __init__(self, sink: AuditSink, *, logger=None):
        self.sink = sink
        self.logger = logger or get_logger()

    async def record(
        self,
        submission_id: str,
        operation: AuditOperation | str,
        status: AuditStatus | str,
        details: dict[str, Any] | None = None,
        *,
        error_message: str | None = None,
        duration_ms: int | None = None,
        retry_attempt: int | None = None,
        error_classification: ErrorCategory | None = None,
    ) -> AuditLogEntry | None:
        """Append one entry.

        Returns:
            The entry written, or None when the sink failed.
        """
        try:
            entry = AuditLogEntry(
                submission_id=submission_id,
                operation=AuditOperation(operation),
                status=AuditStatus(status),
                details=details or {},
                error_message=error_message,
                duration_ms=duration_ms,
                retry_attempt=retry_attempt,
                error_classification=error_classification,
                created_at=datetime.now(timezone.utc),
            )
            row_id = await self.sink.append(entry)
        except Exception:
            self.logger.exception("Failed to write audit entry for submission %s", submission_id)
            return None
        if isinstance(row_id, int):
            entry = entry.model_copy(update={"id": row_id})
        return entry

    async def entries(self, submission_id: str) -> list[AuditLogEntry]:
        """Return the trail of ``submission_id`` when the sink can list it."""
        list_audit = getattr(self.sink, "list_audit", None)
        if list_audit is None:
            return []
        return await list_audit(submission_id)
