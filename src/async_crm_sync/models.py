# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the CRM submission sync service.

This module defines the data models shared by the reliability layer for
validation, serialization, and type safety.

Models:
    - Submission: One form submission awaiting or having undergone sync
    - ErrorAnalysis: Derived diagnosis produced by the error classifier
    - RetryConfig: Per-category backoff parameters
    - AuditLogEntry: Append-only record of an attempt/outcome transition
    - FieldMetadata: Remote field description used for type coercion
    - FormConfiguration: Per-form mapping rules for outbound records
    - FormattedRecord: Outbound record plus formatting diagnostics
    - HandleErrorResult: What callers of the error handler get back
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TARGET_MODULE = "Leads"


class ErrorCategory(str, Enum):
    """Classified bucket an error is placed into, driving retry policy."""

    CREDENTIAL_EXPIRED = "credential_expired"
    CREDENTIAL_INVALID = "credential_invalid"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    REMOTE_SERVER_ERROR = "remote_server_error"
    FIELD_MAPPING = "field_mapping"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """Qualitative impact level attached to a classification."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AuditOperation(str, Enum):
    RECEIVED = "received"
    FIELD_SYNC = "field_sync"
    CRM_PUSH = "crm_push"
    RETRY_ATTEMPT = "retry_attempt"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


class FieldType(str, Enum):
    """Outbound field types understood by the field formatter."""

    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    PICKLIST = "picklist"
    MULTISELECT = "multiselectpicklist"
    BOOLEAN = "boolean"


class Submission(BaseModel):
    """One unit of form data destined for the external CRM.

    Attributes:
        id: Opaque identifier, stable for the submission's lifetime.
        form_name: Name of the form the data was submitted through.
        target_module: Logical destination in the CRM (e.g. "Leads").
        payload: Ordered mapping of submitted field name to value.
        retry_count: Number of executed retry attempts.
        last_error: Human-readable message of the most recent failure.
        last_retry_at: When the most recent retry attempt started.
        next_retry_at: When the next scheduled retry is due, if any.
        last_sync_at: When the record was last pushed successfully.
        sync_status: pending, synced or failed.
        processing_status: pending, processing, completed or failed.
        external_id: CRM record id, set once the record exists remotely.
        error_category: Classification recorded when the last error was handled.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    form_name: str
    target_module: str = DEFAULT_TARGET_MODULE
    payload: dict[str, Any] = Field(default_factory=dict)
    retry_count: Annotated[int, Field(ge=0)] = 0
    last_error: str | None = None
    last_retry_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_sync_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    external_id: str | None = None
    error_category: ErrorCategory | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """True when no further automatic retry will occur."""
        return self.sync_status in (SyncStatus.SYNCED, SyncStatus.FAILED)


class SubmissionCreate(BaseModel):
    """Validated form submission accepted by the intake endpoint."""

    model_config = ConfigDict(extra="forbid")

    form_name: Annotated[str, Field(min_length=1, description="Form identifier")]
    data: Annotated[dict[str, Any], Field(description="Submitted field values")]
    target_module: str | None = None
    id: str | None = None

    @field_validator("data")
    @classmethod
    def data_not_empty(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Reject submissions without any field."""
        if not v:
            raise ValueError("Form data cannot be empty")
        return v


class RetryConfig(BaseModel):
    """Backoff parameters for one error category.

    Attributes:
        max_retries: Upper bound on executed retries; 0 means non-retryable.
        base_delay_ms: Delay of the first retry, in milliseconds.
        max_delay_ms: Cap applied before jitter, in milliseconds.
        backoff_multiplier: Exponential growth factor per retry.
        jitter_enabled: Whether a uniform +/-10% perturbation is applied.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: Annotated[int, Field(ge=0)]
    base_delay_ms: Annotated[int, Field(ge=0)]
    max_delay_ms: Annotated[int, Field(ge=0)]
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 1.0
    jitter_enabled: bool = False


class ErrorAnalysis(BaseModel):
    """Structured diagnosis of one error. Produced fresh on every call."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    is_retryable: bool
    retry_after_seconds: int
    max_retries: int
    suggested_action: str
    severity: Severity


class HandleErrorResult(BaseModel):
    """Outcome returned to callers of the error handler."""

    model_config = ConfigDict(frozen=True)

    should_retry: bool
    retry_after_ms: int
    error_analysis: ErrorAnalysis


class AuditLogEntry(BaseModel):
    """Append-only record of an attempt or outcome transition."""

    id: int | None = None
    submission_id: str
    operation: AuditOperation
    status: AuditStatus
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    duration_ms: int | None = None
    retry_attempt: int | None = None
    error_classification: ErrorCategory | None = None
    created_at: datetime | None = None


class FieldMetadata(BaseModel):
    """Description of one remote CRM field (read-only here)."""

    api_name: str
    label: str = ""
    data_type: str = FieldType.TEXT.value
    max_length: int | None = None
    is_custom_field: bool = False


class SubmitFieldConfig(BaseModel):
    """Explicit mapping of one form field to a CRM field."""

    model_config = ConfigDict(extra="forbid")

    crm_field: Annotated[str, Field(min_length=1)]
    label: str | None = None
    required: bool = False
    field_type: FieldType | None = None
    max_length: Annotated[int, Field(gt=0)] | None = None


class FormConfiguration(BaseModel):
    """Per-form rules deciding which fields reach the CRM and how.

    Attributes:
        form_name: Unique form identifier.
        target_module: CRM module records of this form are written to.
        lead_source_tag: Value written to the lead source field.
        submit_fields: Explicit field configuration keyed by form field.
        field_mappings: Legacy simple mapping, form field to CRM field.
        strict_mapping: When True, unconfigured fields are excluded.
        active: Inactive configurations are ignored by lookups.
    """

    model_config = ConfigDict(extra="forbid")

    form_name: Annotated[str, Field(min_length=1)]
    target_module: str = DEFAULT_TARGET_MODULE
    lead_source_tag: str | None = None
    submit_fields: dict[str, SubmitFieldConfig] = Field(default_factory=dict)
    field_mappings: dict[str, str] = Field(default_factory=dict)
    strict_mapping: bool = False
    active: bool = True

    @property
    def lead_source(self) -> str:
        return self.lead_source_tag or f"Form: {self.form_name}"


class FormattedRecord(BaseModel):
    """Outbound CRM record together with the diagnostics that produced it."""

    record: dict[str, Any]
    lead_source: str
    excluded_fields: list[str] = Field(default_factory=list)
    truncated_fields: list[str] = Field(default_factory=list)
    field_types: dict[str, FieldType] = Field(default_factory=dict)
    strict_mapping: bool = False

    def diagnostics(self) -> dict[str, Any]:
        """Return the audit-friendly summary of this formatting pass."""
        return {
            "lead_source": self.lead_source,
            "excluded_fields": list(self.excluded_fields),
            "truncated_fields": list(self.truncated_fields),
            "strict_mapping": self.strict_mapping,
            "field_count": len(self.record),
        }
