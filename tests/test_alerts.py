import aiohttp
import pytest

from async_crm_sync.alerts import LoggingAlerter, WebhookAlerter
from async_crm_sync.classifier import analysis_for
from async_crm_sync.models import ErrorCategory, Submission, SyncStatus


class DummyResponse:
    def __init__(self, status=200):
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"status {self.status}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    def __init__(self, status=200):
        self.status = status
        self.posts = []

    def post(self, url, json=None):
        self.posts.append((url, json))
        return DummyResponse(self.status)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _failed_submission():
    return Submission(
        id="sub-1",
        form_name="contact",
        retry_count=1,
        last_error="CRITICAL: unauthorized (Max retries exceeded)",
        sync_status=SyncStatus.FAILED,
    )


@pytest.mark.asyncio
async def test_logging_alerter(caplog):
    await LoggingAlerter().notify_critical(_failed_submission(), analysis_for(ErrorCategory.CREDENTIAL_INVALID))
    assert "CRITICAL ALERT: submission sub-1" in caplog.text


@pytest.mark.asyncio
async def test_webhook_posts_payload():
    session = DummySession()
    alerter = WebhookAlerter("https://hooks.example.com/a", session_factory=lambda: session)
    await alerter.notify_critical(_failed_submission(), analysis_for(ErrorCategory.CREDENTIAL_INVALID))

    url, payload = session.posts[0]
    assert url == "https://hooks.example.com/a"
    assert payload["submission_id"] == "sub-1"
    assert payload["error_analysis"]["category"] == "credential_invalid"
    assert payload["error_analysis"]["severity"] == "critical"


@pytest.mark.asyncio
async def test_webhook_failure_is_logged(caplog):
    alerter = WebhookAlerter("https://hooks.example.com/a", session_factory=lambda: DummySession(status=500))
    await alerter.notify_critical(_failed_submission(), analysis_for(ErrorCategory.CREDENTIAL_INVALID))
    assert "Alert webhook https://hooks.example.com/a not reachable" in caplog.text
