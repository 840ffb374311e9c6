"""Resilient CRM submission sync with error classification and retry scheduling.

This package provides the reliability layer between a validated form
submission and a durable "synced" or "permanently failed" state, including:

- Error classification into retry categories with fixed severities
- Per-category retry policies with exponential backoff and jitter
- Per-submission retry timers and a periodic batch queue processor
- Category-specific recovery actions (credential and field cache refresh)
- An append-only audit log of every attempt
- Field formatting of form payloads into CRM records
- Error statistics, Prometheus metrics and a FastAPI admin API
- SQLite persistence for reliability

Example:
    Basic usage with the FastAPI application::

        from async_crm_sync.core import SubmissionOrchestrator
        from async_crm_sync.api import create_app
        from async_crm_sync.persistence import Persistence

        orchestrator = SubmissionOrchestrator(repository=Persistence("/data/crm_sync.db"))
        app = create_app(orchestrator, api_token="secret")

Authors:
    Softwell S.r.l.
"""
