# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Category-specific recovery steps run before a retry is scheduled.

Recovery is best-effort: a failing action is logged and the retry is still
scheduled, since the next attempt may succeed on its own.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from .collaborators import CredentialProvider, FieldMetadataSource
from .logger import get_logger
from .models import ErrorAnalysis, ErrorCategory
from .retry_policy import RECOVERY_ACTIONS_TAKEN
from .scheduler import RetryScheduler


class RecoveryActions:
    """Dispatch recovery side effects by error category.

    Attributes:
        credential_name: Credential refreshed on expired-token errors.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        credentials: CredentialProvider | None,
        field_cache: FieldMetadataSource | None,
        scheduler: RetryScheduler,
        *,
        credential_name: str = "crm",
        logger=None,
    ):
        self.credentials = credentials
        self.field_cache = field_cache
        self.scheduler = scheduler
        self.credential_name = credential_name
        self.logger = logger or get_logger()
        self._handlers: dict[ErrorCategory, Callable[[str], Awaitable[None]]] = {
            ErrorCategory.CREDENTIAL_EXPIRED: self._refresh_credentials,
            ErrorCategory.CREDENTIAL_INVALID: self._flag_reauthentication,
            ErrorCategory.RATE_LIMIT: self._enqueue_rate_limited,
            ErrorCategory.FIELD_MAPPING: self._refresh_field_cache,
            ErrorCategory.VALIDATION: self._flag_validation_review,
        }

    async def perform(self, submission_id: str, analysis: ErrorAnalysis) -> list[str]:
        """Run the recovery action of ``analysis.category``.

        Returns:
            Descriptions of the actions taken, for the audit trail. Empty
            when the action failed.
        """
        handler = self._handlers.get(analysis.category)
        if handler is not None:
            try:
                await handler(submission_id)
            except Exception:
                self.logger.exception(
                    "Recovery action for %s failed on submission %s",
                    analysis.category.value,
                    submission_id,
                )
                return []
        return self.actions_taken(analysis.category)

    @staticmethod
    def actions_taken(category: ErrorCategory) -> list[str]:
        return [RECOVERY_ACTIONS_TAKEN[category]]

    async def _refresh_credentials(self, submission_id: str) -> None:
        if self.credentials is None:
            self.logger.warning("No credential provider configured; cannot refresh for %s", submission_id)
            return
        await self.credentials.force_refresh(self.credential_name)
        self.logger.info("Credential refresh triggered for submission %s", submission_id)

    async def _flag_reauthentication(self, submission_id: str) -> None:
        self.logger.warning("Submission %s needs manual CRM re-authentication", submission_id)

    async def _enqueue_rate_limited(self, submission_id: str) -> None:
        self.scheduler.enqueue(ErrorCategory.RATE_LIMIT, submission_id)

    async def _refresh_field_cache(self, submission_id: str) -> None:
        if self.field_cache is None:
            return
        await self.field_cache.force_refresh()
        self.logger.info("Field metadata cache refreshed for submission %s", submission_id)

    async def _flag_validation_review(self, submission_id: str) -> None:
        self.logger.warning("Submission %s requires manual validation review", submission_id)
