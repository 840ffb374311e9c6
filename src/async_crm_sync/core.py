# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the CRM submission sync service.

This module provides the SubmissionOrchestrator class, the entry point of
the reliability layer between a validated form submission and a durable
"synced" or "permanently failed" state. It coordinates:

- Intake of new submissions and the first push to the CRM
- Error classification and audit logging of every failure
- Category-specific recovery actions before a retry
- Retry scheduling with exponential backoff and jitter
- Terminal failure handling and critical alerts

Example:
    Running the orchestrator::

        from async_crm_sync.core import SubmissionOrchestrator
        from async_crm_sync.persistence import Persistence

        persistence = Persistence("/data/crm_sync.db")
        orchestrator = SubmissionOrchestrator(
            repository=persistence,
            record_service=crm_client,
        )
        await orchestrator.start()
        submission = await orchestrator.submit("contact", {"email": "a@b.it"})
        ...
        await orchestrator.stop()

Attributes:
    FALLBACK_ACTION: Suggested action returned when the handler itself fails.
"""

from __future__ import annotations

import random
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from .alerts import LoggingAlerter, WebhookAlerter
from .audit import AuditLog
from .classifier import classify, error_message
from .collaborators import (
    Alerter,
    AuditSink,
    CredentialProvider,
    FieldMetadataSource,
    FormConfigurationStore,
    RecordService,
    SubmissionRepository,
)
from .config_loader import ServiceConfig
from .credentials import StaticTokenProvider
from .crm_client import CrmClient
from .errors import CrmApiError, SubmissionNotFoundError
from .field_cache import FieldMetadataCache
from .formatter import FieldFormatter, missing_required_fields
from .logger import get_logger
from .models import (
    DEFAULT_TARGET_MODULE,
    AuditOperation,
    AuditStatus,
    ErrorAnalysis,
    ErrorCategory,
    FieldMetadata,
    FormConfiguration,
    HandleErrorResult,
    ProcessingStatus,
    RetryConfig,
    Severity,
    Submission,
    SyncStatus,
)
from .persistence import Persistence
from .prometheus import SyncMetrics
from .recovery import RecoveryActions
from .retry_policy import RETRY_POLICIES, get_policy, max_retry_bound
from .scheduler import DEFAULT_BATCH_INTERVAL, RetryScheduler, calculate_retry_delay
from .statistics import ErrorStatistics, compute_error_statistics

FALLBACK_ACTION = "Manual intervention required - error handler failed"
MISSING_SUBMISSION_ACTION = "Manual intervention required - submission not found"

SendOperation = Callable[[Submission], Awaitable[str]]


def _fallback_analysis(action: str = FALLBACK_ACTION) -> ErrorAnalysis:
    return ErrorAnalysis(
        category=ErrorCategory.UNKNOWN,
        is_retryable=False,
        retry_after_seconds=0,
        max_retries=0,
        suggested_action=action,
        severity=Severity.CRITICAL,
    )


def _coerce_operation(operation: AuditOperation | str) -> AuditOperation:
    try:
        return AuditOperation(operation)
    except ValueError:
        return AuditOperation.CRM_PUSH


class SubmissionOrchestrator:
    """Central coordinator of submission sync and error recovery.

    Attributes:
        repository: Submission repository (the persistence layer by default).
        audit: Audit log facade.
        scheduler: Retry scheduler owning timers and batch queues.
        recovery: Recovery action dispatcher.
        alerter: Receiver of critical terminal failures.
        metrics: Prometheus metrics collector.
        registry: Effective retry policy registry.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        *,
        repository: SubmissionRepository,
        audit_sink: AuditSink | None = None,
        record_service: RecordService | None = None,
        credentials: CredentialProvider | None = None,
        field_cache: FieldMetadataSource | None = None,
        form_configs: FormConfigurationStore | None = None,
        alerter: Alerter | None = None,
        registry: Mapping[ErrorCategory, RetryConfig] | None = None,
        send_operation: SendOperation | None = None,
        formatter: FieldFormatter | None = None,
        metrics: SyncMetrics | None = None,
        batch_interval: float = DEFAULT_BATCH_INTERVAL,
        credential_name: str = "crm",
        rng: random.Random | None = None,
        logger=None,
    ):
        """Initialize the orchestrator with its collaborators.

        Args:
            repository: Submission storage.
            audit_sink: Audit storage. Defaults to ``repository``.
            record_service: CRM record service used by the default send path.
            credentials: Credential provider refreshed on expired tokens.
            field_cache: Field metadata source used for formatting and
                refreshed on field mapping errors.
            form_configs: Store of per-form configuration. Defaults to
                ``repository`` when it provides ``get_form_configuration``.
            alerter: Receiver of critical terminal failures. Defaults to
                logging them.
            registry: Retry policy registry. Defaults to RETRY_POLICIES.
            send_operation: Coroutine pushing one submission and returning
                its external id. Defaults to formatting the payload and
                calling ``record_service``.
            formatter: Field formatter for the default send path.
            metrics: Prometheus metrics collector. If None, creates new instance.
            batch_interval: Seconds between batch queue drains.
            credential_name: Credential refreshed by recovery actions.
            rng: Random source for retry jitter.
            logger: Custom logger instance. If None, uses default logger.
        """
        self.logger = logger or get_logger()
        self.repository = repository
        self.audit = AuditLog(audit_sink or repository, logger=self.logger)
        self.record_service = record_service
        self.field_cache = field_cache
        if form_configs is None and hasattr(repository, "get_form_configuration"):
            form_configs = repository
        self.form_configs = form_configs
        self.alerter = alerter or LoggingAlerter(self.logger)
        self.registry = registry if registry is not None else RETRY_POLICIES
        self.formatter = formatter or FieldFormatter()
        self.metrics = metrics or SyncMetrics()
        self._rng = rng
        self._send = send_operation or self._send_to_crm
        # Retry counts are checked against the current category's policy in
        # handle_error; this ceiling holds regardless of category changes.
        self._retry_ceiling = max_retry_bound(self.registry) + 1

        self.scheduler = RetryScheduler(
            self.execute_retry,
            batch_interval=batch_interval,
            logger=self.logger,
            metrics=self.metrics,
        )
        self.recovery = RecoveryActions(
            credentials,
            field_cache,
            self.scheduler,
            credential_name=credential_name,
            logger=self.logger,
        )

    @classmethod
    def from_config(cls, config: ServiceConfig, *, metrics: SyncMetrics | None = None) -> "SubmissionOrchestrator":
        """Build an orchestrator and its default collaborators from settings."""
        persistence = Persistence(config.db_path)
        credentials = StaticTokenProvider({config.credential_name: config.crm_access_token})
        client = None
        if config.crm_base_url:
            client = CrmClient(
                config.crm_base_url,
                credentials,
                credential_name=config.credential_name,
                timeout=config.crm_timeout,
            )
        field_cache = FieldMetadataCache(
            persistence,
            client.get_module_fields if client else None,
            ttl_seconds=config.field_cache_ttl,
        )
        alerter = WebhookAlerter(config.alert_webhook_url) if config.alert_webhook_url else LoggingAlerter()
        return cls(
            repository=persistence,
            record_service=client,
            credentials=credentials,
            field_cache=field_cache,
            alerter=alerter,
            registry=config.retry_policies,
            metrics=metrics,
            batch_interval=config.batch_interval,
            credential_name=config.credential_name,
        )

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialize the persistence schema when the repository has one."""
        init_db = getattr(self.repository, "init_db", None)
        if init_db is not None:
            await init_db()

    async def start(self) -> None:
        """Initialize storage, start the batch retry processor and resume pending retries."""
        await self.init()
        await self.scheduler.start()
        await self.resume_pending()

    async def resume_pending(self) -> int:
        """Re-arm retry timers for submissions left pending by a previous run.

        A stored ``next_retry_at`` keeps its remaining delay; a submission
        without one, or already past it, is retried immediately.

        Returns:
            Number of retries scheduled.
        """
        list_submissions = getattr(self.repository, "list_submissions", None)
        if list_submissions is None:
            return 0
        now = self._utc_now()
        resumed = 0
        for submission in await list_submissions(sync_status=SyncStatus.PENDING.value):
            delay_ms = 0
            due = submission.next_retry_at
            if due is not None:
                if due.tzinfo is None:
                    due = due.replace(tzinfo=timezone.utc)
                delay_ms = max(0, int((due - now).total_seconds() * 1000))
            if self.scheduler.schedule_retry(submission.id, delay_ms):
                resumed += 1
        if resumed:
            self.logger.info("Resumed %d pending retries", resumed)
        return resumed

    async def stop(self) -> None:
        """Cancel pending retries and stop the batch processor."""
        await self.scheduler.shutdown()

    # -------------------------------------------------------------------- intake
    async def submit(
        self,
        form_name: str,
        payload: Mapping[str, Any],
        *,
        target_module: str | None = None,
        submission_id: str | None = None,
    ) -> Submission:
        """Store a new submission and push it to the CRM.

        A failed push is handed to ``handle_error``; the caller always gets
        the stored submission back, whatever its sync state.

        Args:
            form_name: Form the data was submitted through.
            payload: Submitted field values.
            target_module: CRM module; defaults to the form's configured
                module, then "Leads".
            submission_id: Optional caller-chosen id. An existing submission
                with that id is returned unchanged.

        Returns:
            The submission as stored after the first attempt.
        """
        if submission_id:
            existing = await self.repository.find(submission_id)
            if existing is not None:
                return existing
        config = await self._lookup_form_configuration(form_name)
        module = target_module or (config.target_module if config else DEFAULT_TARGET_MODULE)
        submission = Submission(
            id=submission_id or uuid.uuid4().hex,
            form_name=form_name,
            target_module=module,
            payload=dict(payload),
            processing_status=ProcessingStatus.PROCESSING,
        )
        await self.repository.insert_submission(submission)
        await self.audit.record(
            submission.id,
            AuditOperation.RECEIVED,
            AuditStatus.SUCCESS,
            {"form_name": form_name, "target_module": module, "field_count": len(submission.payload)},
        )

        started = time.perf_counter()
        try:
            external_id = await self._send(submission)
        except Exception as exc:
            await self.audit.record(
                submission.id,
                AuditOperation.CRM_PUSH,
                AuditStatus.FAILED,
                {"target_module": module},
                error_message=error_message(exc),
                duration_ms=self._elapsed_ms(started),
            )
            await self.handle_error(submission.id, exc, AuditOperation.CRM_PUSH)
        else:
            await self._mark_synced(submission.id, external_id)
            await self.audit.record(
                submission.id,
                AuditOperation.CRM_PUSH,
                AuditStatus.SUCCESS,
                {"target_module": module, "external_id": external_id},
                duration_ms=self._elapsed_ms(started),
            )
        return await self.repository.find(submission.id) or submission

    # ------------------------------------------------------------ error handling
    async def handle_error(
        self,
        submission_id: str,
        error: BaseException | str,
        operation: AuditOperation | str = AuditOperation.CRM_PUSH,
        context: dict[str, Any] | None = None,
    ) -> HandleErrorResult:
        """Classify a failure, then recover and schedule a retry or give up.

        Never raises: if anything goes wrong while handling the error, a
        non-retryable critical fallback analysis is returned instead.

        Args:
            submission_id: The submission whose operation failed.
            error: The raised exception or its message.
            operation: The operation that failed, recorded in the audit log.
            context: Extra details recorded with the audit entries.

        Returns:
            Whether a retry was scheduled, after how long, and the analysis.
        """
        try:
            return await self._handle_error(submission_id, error, _coerce_operation(operation), context or {})
        except SubmissionNotFoundError:
            self.logger.warning("Cannot handle error for missing submission %s", submission_id)
            return HandleErrorResult(
                should_retry=False,
                retry_after_ms=0,
                error_analysis=_fallback_analysis(MISSING_SUBMISSION_ACTION),
            )
        except Exception:
            self.logger.exception("Error handler failed for submission %s", submission_id)
            return HandleErrorResult(should_retry=False, retry_after_ms=0, error_analysis=_fallback_analysis())

    async def _handle_error(
        self,
        submission_id: str,
        error: BaseException | str,
        operation: AuditOperation,
        context: dict[str, Any],
    ) -> HandleErrorResult:
        message = error_message(error)
        analysis = classify(error, context, registry=self.registry)
        self.metrics.inc_error(analysis.category.value)
        self.logger.info(
            "Submission %s %s error classified as %s (severity=%s, retryable=%s)",
            submission_id,
            operation.value,
            analysis.category.value,
            analysis.severity.value,
            analysis.is_retryable,
        )
        await self.audit.record(
            submission_id,
            operation,
            AuditStatus.IN_PROGRESS,
            {
                "error_category": analysis.category.value,
                "severity": analysis.severity.value,
                "suggested_action": analysis.suggested_action,
                "context": context,
            },
            error_message=message,
            error_classification=analysis.category,
        )

        submission = await self.repository.find(submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        await self.repository.update(submission_id, {"last_error": message, "error_category": analysis.category})

        if submission.retry_count >= analysis.max_retries:
            return await self._give_up(submission, analysis, message, operation)

        actions = await self.recovery.perform(submission_id, analysis)
        policy = get_policy(analysis.category, self.registry)
        delay_ms = calculate_retry_delay(submission.retry_count, policy, rng=self._rng)
        next_attempt = submission.retry_count + 1
        if analysis.is_retryable:
            if self.scheduler.schedule_retry(submission_id, delay_ms):
                self.metrics.inc_retry_scheduled(analysis.category.value)
            # Persisted whether or not a timer was armed; start() resumes it.
            await self.repository.update(
                submission_id,
                {
                    "sync_status": SyncStatus.PENDING,
                    "processing_status": ProcessingStatus.PENDING,
                    "next_retry_at": self._utc_now() + timedelta(milliseconds=delay_ms),
                },
            )
        await self.audit.record(
            submission_id,
            operation,
            AuditStatus.SUCCESS,
            {
                "error_category": analysis.category.value,
                "scheduled_retry_after_ms": delay_ms,
                "next_retry_attempt": next_attempt,
                "recovery_actions": actions,
            },
            retry_attempt=next_attempt,
            error_classification=analysis.category,
        )
        return HandleErrorResult(
            should_retry=analysis.is_retryable,
            retry_after_ms=delay_ms,
            error_analysis=analysis,
        )

    async def _give_up(
        self,
        submission: Submission,
        analysis: ErrorAnalysis,
        message: str,
        operation: AuditOperation,
    ) -> HandleErrorResult:
        """Move a submission to the terminal failed state."""
        critical = analysis.severity is Severity.CRITICAL
        last_error = f"CRITICAL: {message} (Max retries exceeded)" if critical else message
        await self.audit.record(
            submission.id,
            operation,
            AuditStatus.FAILED,
            {
                "reason": "max_retries_exceeded",
                "retry_count": submission.retry_count,
                "max_retries": analysis.max_retries,
                "error_category": analysis.category.value,
                "suggested_action": analysis.suggested_action,
            },
            error_message=message,
            retry_attempt=submission.retry_count,
            error_classification=analysis.category,
        )
        self.scheduler.cancel(submission.id)
        await self.repository.update(
            submission.id,
            {
                "sync_status": SyncStatus.FAILED,
                "processing_status": ProcessingStatus.FAILED,
                "last_error": last_error,
                "next_retry_at": None,
            },
        )
        self.metrics.inc_permanent_failure(analysis.category.value)
        self.logger.error(
            "Submission %s failed permanently after %d retries [%s]: %s",
            submission.id,
            submission.retry_count,
            analysis.category.value,
            analysis.suggested_action,
        )
        if critical:
            terminal = submission.model_copy(
                update={"last_error": last_error, "sync_status": SyncStatus.FAILED, "error_category": analysis.category}
            )
            try:
                await self.alerter.notify_critical(terminal, analysis)
            except Exception:
                self.logger.exception("Critical alert delivery failed for submission %s", submission.id)
        return HandleErrorResult(should_retry=False, retry_after_ms=0, error_analysis=analysis)

    # ------------------------------------------------------------------- retries
    async def execute_retry(self, submission_id: str) -> bool | None:
        """Re-run the send operation of a submission.

        Invoked by the scheduler when a timer fires or the batch queue is
        drained. Each call counts exactly one retry attempt.

        Returns:
            True when the submission is synced, False when the attempt failed
            or was not run, None when the submission no longer exists.
        """
        submission = await self.repository.find(submission_id)
        if submission is None:
            self.logger.warning("Retry skipped: submission %s no longer exists", submission_id)
            return None
        if submission.sync_status is SyncStatus.SYNCED:
            self.logger.info("Retry skipped: submission %s is already synced", submission_id)
            return True
        if submission.sync_status is SyncStatus.FAILED:
            self.logger.info("Retry skipped: submission %s has failed permanently", submission_id)
            return False

        retry_count = await self.repository.increment_retry_count(submission_id)
        now = self._utc_now()
        await self.repository.update(
            submission_id,
            {"last_retry_at": now, "next_retry_at": None, "processing_status": ProcessingStatus.PROCESSING},
        )
        await self.audit.record(
            submission_id,
            AuditOperation.RETRY_ATTEMPT,
            AuditStatus.IN_PROGRESS,
            {"retry_count": retry_count},
            retry_attempt=retry_count,
        )
        submission = submission.model_copy(update={"retry_count": retry_count, "last_retry_at": now})

        started = time.perf_counter()
        try:
            external_id = await self._send(submission)
        except Exception as exc:
            message = error_message(exc)
            await self.audit.record(
                submission_id,
                AuditOperation.RETRY_ATTEMPT,
                AuditStatus.FAILED,
                {"retry_count": retry_count},
                error_message=message,
                duration_ms=self._elapsed_ms(started),
                retry_attempt=retry_count,
            )
            if retry_count > self._retry_ceiling:
                self.logger.error(
                    "Submission %s exceeded the retry ceiling (%d); marking failed",
                    submission_id,
                    self._retry_ceiling,
                )
                await self.repository.update(
                    submission_id,
                    {
                        "sync_status": SyncStatus.FAILED,
                        "processing_status": ProcessingStatus.FAILED,
                        "last_error": message,
                    },
                )
                return False
            await self.handle_error(
                submission_id,
                exc,
                AuditOperation.RETRY_ATTEMPT,
                {"retry_attempt": retry_count},
            )
            return False

        await self._mark_synced(submission_id, external_id)
        await self.audit.record(
            submission_id,
            AuditOperation.RETRY_ATTEMPT,
            AuditStatus.SUCCESS,
            {"external_id": external_id, "retry_count": retry_count},
            duration_ms=self._elapsed_ms(started),
            retry_attempt=retry_count,
        )
        self.metrics.inc_retry_success()
        self.logger.info("Submission %s synced on retry %d", submission_id, retry_count)
        return True

    async def retry_now(self, submission_id: str) -> bool:
        """Schedule an immediate retry on operator request.

        A permanently failed submission is put back to pending for one more
        attempt; its retry count is kept, so a new failure is terminal again.

        Returns:
            False when the submission is already synced, True otherwise.

        Raises:
            SubmissionNotFoundError: If the submission does not exist.
        """
        submission = await self.repository.find(submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        if submission.sync_status is SyncStatus.SYNCED:
            return False
        await self.repository.update(
            submission_id,
            {"sync_status": SyncStatus.PENDING, "processing_status": ProcessingStatus.PENDING},
        )
        return self.scheduler.schedule_retry(submission_id, 0)

    async def _mark_synced(self, submission_id: str, external_id: str) -> None:
        self.scheduler.cancel(submission_id)
        await self.repository.update(
            submission_id,
            {
                "external_id": external_id,
                "sync_status": SyncStatus.SYNCED,
                "processing_status": ProcessingStatus.COMPLETED,
                "last_sync_at": self._utc_now(),
                "last_error": None,
                "next_retry_at": None,
            },
        )

    # ----------------------------------------------------------------- send path
    async def _lookup_form_configuration(self, form_name: str) -> FormConfiguration | None:
        if self.form_configs is None:
            return None
        config = await self.form_configs.get_form_configuration(form_name)
        if config is None or not config.active:
            return None
        return config

    async def _field_metadata(self, module: str) -> list[FieldMetadata]:
        if self.field_cache is None:
            return []
        try:
            return await self.field_cache.get_cached_fields(module)
        except Exception as exc:
            self.logger.warning("Field metadata for %s unavailable, inferring types: %s", module, exc)
            return []

    async def _send_to_crm(self, submission: Submission) -> str:
        """Format the payload and upsert it, returning the CRM record id."""
        config = await self._lookup_form_configuration(submission.form_name)
        if config is None:
            config = FormConfiguration(form_name=submission.form_name, target_module=submission.target_module)
        missing = missing_required_fields(submission.payload, config)
        if missing:
            raise ValueError(f"Validation failed: required field missing: {', '.join(missing)}")

        metadata = await self._field_metadata(submission.target_module)
        formatted = self.formatter.format_submission(submission.payload, config=config, metadata=metadata)
        await self.audit.record(
            submission.id,
            AuditOperation.FIELD_SYNC,
            AuditStatus.SUCCESS,
            formatted.diagnostics(),
        )
        if self.record_service is None:
            raise CrmApiError("No CRM record service configured")
        result = await self.record_service.create_or_update(submission.target_module, formatted.record)
        external_id = (result or {}).get("external_id")
        if not external_id:
            raise CrmApiError("CRM server error: response carried no record id")
        return str(external_id)

    # ----------------------------------------------------------------- reporting
    async def statistics(self) -> ErrorStatistics:
        """Compute error statistics over every stored submission."""
        return compute_error_statistics(await self.repository.list_submissions())

    async def audit_trail(self, submission_id: str):
        return await self.audit.entries(submission_id)
