# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the CRM sync service.

This module provides the administrative REST interface of the sync
pipeline. It includes:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header

The API supports operations including:
- Accepting new form submissions
- Inspecting submissions and their audit trail
- Requesting an immediate retry of a pending or failed submission
- Error statistics, health checks and Prometheus metrics exposure

Example:
    Creating and running the API application::

        from async_crm_sync.core import SubmissionOrchestrator
        from async_crm_sync.api import create_app

        orchestrator = SubmissionOrchestrator(repository=persistence)
        app = create_app(orchestrator, api_token="secret-token")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import SubmissionOrchestrator
from .errors import SubmissionNotFoundError
from .models import AuditLogEntry, ProcessingStatus, Submission, SubmissionCreate, SyncStatus
from .statistics import ErrorStatistics

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class SubmissionResponse(CommandStatus):
    submission: Submission


class SubmissionsResponse(CommandStatus):
    submissions: List[Submission]


class AuditResponse(CommandStatus):
    submission_id: str
    entries: List[AuditLogEntry]


class RetryResponse(CommandStatus):
    """Outcome of a manual retry request."""
    scheduled: bool


class StatisticsResponse(CommandStatus):
    statistics: ErrorStatistics


def create_app(
    svc: SubmissionOrchestrator,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_crm_sync.core.SubmissionOrchestrator`
        serving every request.
    api_token:
        Optional secret used to protect every endpoint but ``/health``. When
        provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Async CRM Sync", lifespan=lifespan)
    api.state.api_token = api_token
    service = svc

    router = APIRouter(prefix="/submissions", tags=["submissions"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the pipeline."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("", response_model=SubmissionResponse, response_model_exclude_none=True)
    async def create_submission(payload: SubmissionCreate):
        """Accept a validated form submission and push it to the CRM."""
        submission = await service.submit(
            payload.form_name,
            payload.data,
            target_module=payload.target_module,
            submission_id=payload.id,
        )
        return SubmissionResponse(ok=True, submission=submission)

    @router.get("", response_model=SubmissionsResponse, response_model_exclude_none=True)
    async def list_submissions(
        sync_status: Optional[SyncStatus] = None,
        processing_status: Optional[ProcessingStatus] = None,
        form_name: Optional[str] = None,
        limit: Optional[int] = None,
    ):
        """List submissions, optionally filtered by status or form."""
        filters: Dict[str, Any] = {
            "sync_status": sync_status.value if sync_status else None,
            "processing_status": processing_status.value if processing_status else None,
            "form_name": form_name,
            "limit": limit,
        }
        submissions = await service.repository.list_submissions(**filters)
        return SubmissionsResponse(ok=True, submissions=submissions)

    @router.get("/{submission_id}", response_model=SubmissionResponse, response_model_exclude_none=True)
    async def get_submission(submission_id: str):
        submission = await service.repository.find(submission_id)
        if submission is None:
            raise HTTPException(404, f"Submission '{submission_id}' not found")
        return SubmissionResponse(ok=True, submission=submission)

    @router.get("/{submission_id}/audit", response_model=AuditResponse, response_model_exclude_none=True)
    async def get_audit(submission_id: str):
        """Return the audit trail of a submission in creation order."""
        entries = await service.audit_trail(submission_id)
        return AuditResponse(ok=True, submission_id=submission_id, entries=entries)

    @router.post("/{submission_id}/retry", response_model=RetryResponse, response_model_exclude_none=True)
    async def retry_submission(submission_id: str):
        """Schedule an immediate retry (operator action)."""
        try:
            scheduled = await service.retry_now(submission_id)
        except SubmissionNotFoundError:
            raise HTTPException(404, f"Submission '{submission_id}' not found") from None
        if not scheduled:
            return RetryResponse(ok=False, scheduled=False, error="Submission already synced or scheduler stopped")
        return RetryResponse(ok=True, scheduled=True)

    @api.get("/statistics", response_model=StatisticsResponse, dependencies=[auth_dependency])
    async def statistics():
        """Error distribution and retry success rate over all submissions."""
        return StatisticsResponse(ok=True, statistics=await service.statistics())

    @api.post("/fields/refresh", response_model=CommandStatus, response_model_exclude_none=True,
              dependencies=[auth_dependency])
    async def refresh_fields():
        """Force a refresh of the cached CRM field metadata."""
        if service.field_cache is None:
            raise HTTPException(503, "No field metadata cache configured")
        await service.field_cache.force_refresh()
        return CommandStatus(ok=True)

    api.include_router(router)
    return api
