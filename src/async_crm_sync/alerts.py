# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Critical alert delivery.

Alerts are best-effort: an alerter never raises, a failed delivery is only
logged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import aiohttp

from .logger import get_logger
from .models import ErrorAnalysis, Submission


class LoggingAlerter:
    """Report critical failures through the service log."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger()

    async def notify_critical(self, submission: Submission, analysis: ErrorAnalysis) -> None:
        self.logger.error(
            "CRITICAL ALERT: submission %s (form %s) failed permanently [%s]: %s",
            submission.id,
            submission.form_name,
            analysis.category.value,
            submission.last_error or analysis.suggested_action,
        )


class WebhookAlerter(LoggingAlerter):
    """Post critical failures as JSON to a webhook, in addition to logging them.

    Args:
        url: Webhook endpoint receiving a POST per alert.
        session_factory: Callable returning a new ``aiohttp.ClientSession``.
        timeout: Total request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        *,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        timeout: float = 10.0,
        logger=None,
    ):
        super().__init__(logger)
        self.url = url
        self._timeout = float(timeout)
        self._session_factory = session_factory or (
            lambda: aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
        )

    async def notify_critical(self, submission: Submission, analysis: ErrorAnalysis) -> None:
        await super().notify_critical(submission, analysis)
        payload = {
            "submission_id": submission.id,
            "form_name": submission.form_name,
            "retry_count": submission.retry_count,
            "last_error": submission.last_error,
            "error_analysis": analysis.model_dump(mode="json"),
        }
        try:
            async with self._session_factory() as session:
                async with session.post(self.url, json=payload) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Alert webhook %s not reachable: %s", self.url, exc)
