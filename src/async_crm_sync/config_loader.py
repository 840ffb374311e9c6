# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the CRM sync service.

Settings come from an INI file and from ``CRS_*`` environment variables;
the environment wins. Retry policies can be tuned per error category with
``[retry.<category>]`` sections, merged onto the built-in registry.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/crm_sync.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [crm]
        base_url = https://www.zohoapis.eu/crm/v2
        credential_name = crm
        access_token = 1000.abc
        timeout = 30

        [scheduler]
        batch_interval = 60

        [alerts]
        webhook_url = https://hooks.example.com/crm-alerts

        [fields]
        cache_ttl_seconds = 300

        [retry.rate_limit]
        max_retries = 8
        max_delay_ms = 600000

    Loading it::

        config = load_service_config("/etc/crm-sync/config.ini")
        config.retry_policies[ErrorCategory.RATE_LIMIT].max_retries  # 8
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .logger import get_logger
from .models import ErrorCategory, RetryConfig
from .retry_policy import RETRY_POLICIES, build_registry

DEFAULT_DB_PATH = "/data/crm_sync.db"
RETRY_SECTION_PREFIX = "retry."

_RETRY_INT_KEYS = ("max_retries", "base_delay_ms", "max_delay_ms")

logger = get_logger("ConfigLoader")


@dataclass
class ServiceConfig:
    """Resolved service settings.

    Attributes:
        db_path: SQLite database path.
        host: Bind address of the admin API.
        port: Bind port of the admin API.
        api_token: Token required in ``X-API-Token``; None disables the check.
        crm_base_url: CRM API root; None runs without a remote record service.
        credential_name: Name of the CRM credential.
        crm_access_token: Initial access token handed to the credential provider.
        crm_timeout: CRM request timeout in seconds.
        batch_interval: Seconds between batch queue drains.
        alert_webhook_url: Optional webhook for critical alerts.
        field_cache_ttl: Lifetime of cached field metadata in seconds.
        log_level: Root logging level name.
        retry_policies: Effective, read-only retry registry.
    """

    db_path: str = DEFAULT_DB_PATH
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    crm_base_url: str | None = None
    credential_name: str = "crm"
    crm_access_token: str | None = None
    crm_timeout: float = 30.0
    batch_interval: float = 60.0
    alert_webhook_url: str | None = None
    field_cache_ttl: float = 300.0
    log_level: str = "INFO"
    retry_policies: Mapping[ErrorCategory, RetryConfig] = field(default_factory=lambda: RETRY_POLICIES)


def _parse_retry_section(name: str, section: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, raw in section.items():
        raw = raw.strip()
        if key == "jitter_enabled":
            values[key] = raw.lower() in ("1", "true", "yes", "on")
            continue
        if key in _RETRY_INT_KEYS:
            cast = int
        elif key == "backoff_multiplier":
            cast = float
        else:
            raise ConfigurationError(f"Unknown key '{key}' in [{RETRY_SECTION_PREFIX}{name}]")
        try:
            values[key] = cast(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {key} in [{RETRY_SECTION_PREFIX}{name}]: {raw!r}") from None
    return values


def load_service_config(
    config_path: str | None = None,
    env: Mapping[str, str] | None = None,
) -> ServiceConfig:
    """Load service settings from an INI file and the environment.

    Args:
        config_path: Path to the INI file. Defaults to ``CRS_CONFIG`` when
            set; with neither, only the environment and defaults apply.
        env: Environment mapping, ``os.environ`` by default.

    Returns:
        The resolved ServiceConfig.

    Raises:
        FileNotFoundError: If an explicit config file does not exist.
        ConfigurationError: If a value cannot be parsed or a retry section
            names an unknown category.
    """
    env = os.environ if env is None else env
    config_path = config_path or env.get("CRS_CONFIG")
    parser = configparser.ConfigParser()
    if config_path:
        if not Path(config_path).exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        parser.read(config_path)
        logger.info("Loaded configuration from %s", config_path)

    def get_str(env_key: str, section: str, key: str, default: str | None = None) -> str | None:
        value = env.get(env_key)
        if value is None:
            value = parser.get(section, key, fallback=None)
        value = value.strip() if value else None
        return value or default

    def get_number(env_key: str, section: str, key: str, default: float, cast=float):
        raw = get_str(env_key, section, key)
        if raw is None:
            return default
        try:
            return cast(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {section}.{key}: {raw!r}") from None

    overrides = {
        name[len(RETRY_SECTION_PREFIX):]: _parse_retry_section(name[len(RETRY_SECTION_PREFIX):], parser[name])
        for name in parser.sections()
        if name.startswith(RETRY_SECTION_PREFIX)
    }

    return ServiceConfig(
        db_path=get_str("CRS_DB_PATH", "storage", "db_path", DEFAULT_DB_PATH),
        host=get_str("CRS_HOST", "server", "host", "0.0.0.0"),
        port=get_number("CRS_PORT", "server", "port", 8000, int),
        api_token=get_str("CRS_API_TOKEN", "server", "api_token"),
        crm_base_url=get_str("CRS_CRM_BASE_URL", "crm", "base_url"),
        credential_name=get_str("CRS_CREDENTIAL_NAME", "crm", "credential_name", "crm"),
        crm_access_token=get_str("CRS_CRM_ACCESS_TOKEN", "crm", "access_token"),
        crm_timeout=get_number("CRS_CRM_TIMEOUT", "crm", "timeout", 30.0),
        batch_interval=get_number("CRS_BATCH_INTERVAL", "scheduler", "batch_interval", 60.0),
        alert_webhook_url=get_str("CRS_ALERT_WEBHOOK_URL", "alerts", "webhook_url"),
        field_cache_ttl=get_number("CRS_FIELD_CACHE_TTL", "fields", "cache_ttl_seconds", 300.0),
        log_level=get_str("CRS_LOG_LEVEL", "logging", "level", "INFO"),
        retry_policies=build_registry(overrides),
    )
