# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Interfaces of the collaborators the sync pipeline depends on.

The orchestrator, recovery actions and field formatter only talk to these
protocols. Concrete defaults live in ``persistence``, ``crm_client``,
``credentials``, ``field_cache`` and ``alerts``; tests substitute small
dummy classes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .models import AuditLogEntry, ErrorAnalysis, FieldMetadata, FormConfiguration, Submission


@runtime_checkable
class CredentialProvider(Protocol):
    async def get_valid_token(self, name: str) -> str | None: ...

    async def force_refresh(self, name: str) -> str | None: ...


@runtime_checkable
class RecordService(Protocol):
    async def create_or_update(self, module: str, record: dict[str, Any]) -> dict[str, Any]:
        """Create or update a record, returning at least ``{"external_id": ...}``."""
        ...


@runtime_checkable
class FieldMetadataSource(Protocol):
    async def get_cached_fields(self, module: str) -> list[FieldMetadata]: ...

    async def force_refresh(self) -> None: ...


@runtime_checkable
class SubmissionRepository(Protocol):
    async def insert_submission(self, submission: Submission) -> None: ...

    async def find(self, submission_id: str) -> Submission | None: ...

    async def update(self, submission_id: str, patch: dict[str, Any]) -> bool: ...

    async def increment_retry_count(self, submission_id: str) -> int: ...

    async def list_submissions(self, **filters: Any) -> list[Submission]: ...


@runtime_checkable
class AuditSink(Protocol):
    async def append(self, entry: AuditLogEntry) -> Any: ...


@runtime_checkable
class FormConfigurationStore(Protocol):
    async def get_form_configuration(self, form_name: str) -> FormConfiguration | None: ...


@runtime_checkable
class Alerter(Protocol):
    async def notify_critical(self, submission: Submission, analysis: ErrorAnalysis) -> None: ...
