"""Tests for service configuration loading from config.ini and CRS_* variables."""

import pytest

from async_crm_sync.config_loader import DEFAULT_DB_PATH, load_service_config
from async_crm_sync.errors import ConfigurationError
from async_crm_sync.models import ErrorCategory
from async_crm_sync.retry_policy import RETRY_POLICIES


def test_defaults_without_file():
    config = load_service_config(env={})
    assert config.db_path == DEFAULT_DB_PATH
    assert config.port == 8000
    assert config.api_token is None
    assert config.crm_base_url is None
    assert config.credential_name == "crm"
    assert config.batch_interval == 60.0
    assert config.log_level == "INFO"
    assert config.retry_policies[ErrorCategory.RATE_LIMIT] == RETRY_POLICIES[ErrorCategory.RATE_LIMIT]


def test_reads_ini_file(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /tmp/crm.db

[server]
host = 127.0.0.1
port = 9000
api_token = secret

[crm]
base_url = https://www.zohoapis.eu/crm/v2
access_token = 1000.abc
timeout = 12.5

[scheduler]
batch_interval = 15

[alerts]
webhook_url = https://hooks.example.com/crm

[fields]
cache_ttl_seconds = 60

[logging]
level = DEBUG

[retry.rate_limit]
max_retries = 8
max_delay_ms = 600000
jitter_enabled = no
""")

    config = load_service_config(str(config_file), env={})

    assert config.db_path == "/tmp/crm.db"
    assert (config.host, config.port, config.api_token) == ("127.0.0.1", 9000, "secret")
    assert config.crm_base_url == "https://www.zohoapis.eu/crm/v2"
    assert config.crm_access_token == "1000.abc"
    assert config.crm_timeout == 12.5
    assert config.batch_interval == 15.0
    assert config.alert_webhook_url == "https://hooks.example.com/crm"
    assert config.field_cache_ttl == 60.0
    assert config.log_level == "DEBUG"
    rate = config.retry_policies[ErrorCategory.RATE_LIMIT]
    assert (rate.max_retries, rate.max_delay_ms, rate.jitter_enabled) == (8, 600_000, False)
    assert rate.base_delay_ms == 60_000


def test_environment_wins(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[server]\nport = 9000\n[storage]\ndb_path = /tmp/file.db\n")
    env = {"CRS_CONFIG": str(config_file), "CRS_PORT": "9100", "CRS_API_TOKEN": "env-token"}

    config = load_service_config(env=env)

    assert config.port == 9100
    assert config.api_token == "env-token"
    assert config.db_path == "/tmp/file.db"


def test_missing_explicit_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_service_config(str(tmp_path / "nope.ini"), env={})


def test_invalid_number():
    with pytest.raises(ConfigurationError, match="server.port"):
        load_service_config(env={"CRS_PORT": "eighty"})


@pytest.mark.parametrize(
    "section,match",
    [
        ("[retry.smtp]\nmax_retries = 1\n", "Unknown retry category"),
        ("[retry.network]\nfrequency = 1\n", "Unknown key"),
        ("[retry.network]\nmax_retries = many\n", "Invalid value for max_retries"),
        ("[retry.network]\nmax_retries = -2\n", "Invalid retry policy"),
    ],
)
def test_invalid_retry_sections(tmp_path, section, match):
    config_file = tmp_path / "config.ini"
    config_file.write_text(section)
    with pytest.raises(ConfigurationError, match=match):
        load_service_config(str(config_file), env={})
