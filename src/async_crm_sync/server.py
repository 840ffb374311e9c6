# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads the
service configuration and runs the SubmissionOrchestrator for the lifetime
of the application.

Usage:
    uvicorn async_crm_sync.server:app --host 0.0.0.0 --port 8000

Environment variables:
    CRS_CONFIG: Optional path to an INI configuration file
    CRS_DB_PATH: Path to SQLite database (default: /data/crm_sync.db)
    CRS_LOG_LEVEL: Root logging level (default: INFO)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import load_service_config
from .core import SubmissionOrchestrator
from .logger import configure_logging

_config = load_service_config()
configure_logging(_config.log_level)

_orchestrator = SubmissionOrchestrator.from_config(_config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the orchestrator."""
    await _orchestrator.start()
    yield
    await _orchestrator.stop()


app = create_app(_orchestrator, api_token=_config.api_token, lifespan=lifespan)
