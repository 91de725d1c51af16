"""Tests for config module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from s3wire.config import (
    ClientConfig,
    ConfigError,
    has_env_config,
    load_config,
    load_from_env,
    load_from_json,
)


def clean_environ() -> dict:
    return {k: v for k, v in os.environ.items() if not k.startswith("S3WIRE_")}


class TestClientConfig:
    """Tests for ClientConfig defaults and endpoint parsing."""

    def test_defaults(self):
        config = ClientConfig(endpoint="s3.example.com", access_key="k", secret_key="s")

        assert config.secure is True
        assert config.region == "us-east-1"
        assert config.addressing_style == "path"
        assert config.chunk_size == 64 * 1024 * 1024
        assert config.validate() == []

    def test_http_url_disables_tls(self):
        """An http:// endpoint is reduced to host:port with secure off."""
        config = ClientConfig(endpoint="http://localhost:9000/", access_key="k", secret_key="s")

        assert config.endpoint == "localhost:9000"
        assert config.secure is False

    def test_https_url_enables_tls(self):
        config = ClientConfig(
            endpoint="https://s3.example.com", access_key="k", secret_key="s", secure=False
        )

        assert config.endpoint == "s3.example.com"
        assert config.secure is True

    def test_validate_reports_every_problem(self):
        config = ClientConfig(
            endpoint="",
            access_key="k",
            secret_key="s",
            timeout=0,
            max_parallel=0,
            max_retries=-1,
            addressing_style="dns",
        )

        problems = config.validate()

        assert "endpoint is required" in problems
        assert "timeout must be positive" in problems
        assert any("max_parallel" in p for p in problems)
        assert "max_retries must not be negative" in problems
        assert any("addressing_style" in p for p in problems)

    def test_credentials(self):
        config = ClientConfig(
            endpoint="http://minio:9000", access_key="AK", secret_key="SK", region="eu-west-1"
        )

        credentials = config.credentials()

        assert credentials.access_key == "AK"
        assert credentials.region == "eu-west-1"
        assert credentials.endpoint == "minio:9000"
        assert credentials.secure is False


class TestLoadFromJson:
    """Tests for load_from_json function."""

    def test_valid_config_parsed_correctly(self, tmp_path: Path):
        """Parse a complete config.json file."""
        config_data = {
            "endpoint": "http://localhost:9000",
            "access_key": "minioadmin",
            "secret_key": "minioadmin",
            "region": "eu-central-1",
            "addressing_style": "virtual",
            "timeout": 10,
            "chunk_size": 8388608,
            "max_parallel": 8,
            "max_retries": 5,
            "retry_delays": [0.1, 0.2],
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        config = load_from_json(str(config_file))

        assert config.endpoint == "localhost:9000"
        assert config.secure is False
        assert config.region == "eu-central-1"
        assert config.addressing_style == "virtual"
        assert config.timeout == 10.0
        assert config.chunk_size == 8388608
        assert config.max_parallel == 8
        assert config.max_retries == 5
        assert config.retry_delays == (0.1, 0.2)

    def test_missing_file_raises_error(self, tmp_path: Path):
        """Raise ConfigError when config file doesn't exist."""
        with pytest.raises(ConfigError, match="Config file not found"):
            load_from_json(str(tmp_path / "nonexistent.json"))

    def test_invalid_json_raises_error(self, tmp_path: Path):
        """Raise ConfigError when JSON is malformed."""
        config_file = tmp_path / "config.json"
        config_file.write_text("{ invalid json }")

        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_from_json(str(config_file))

    def test_non_object_raises_error(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]")

        with pytest.raises(ConfigError, match="JSON object"):
            load_from_json(str(config_file))

    def test_missing_required_field_raises_error(self, tmp_path: Path):
        """Raise ConfigError when required field is missing."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"endpoint": "localhost:9000", "access_key": "k"}))

        with pytest.raises(ConfigError, match="Missing required field 'secret_key'"):
            load_from_json(str(config_file))

    def test_invalid_number_raises_error(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps({"endpoint": "e", "access_key": "k", "secret_key": "s", "max_parallel": "many"})
        )

        with pytest.raises(ConfigError, match="Invalid value for max_parallel"):
            load_from_json(str(config_file))

    def test_out_of_range_value_raises_error(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps({"endpoint": "e", "access_key": "k", "secret_key": "s", "max_parallel": 100})
        )

        with pytest.raises(ConfigError, match="max_parallel must be between"):
            load_from_json(str(config_file))


class TestLoadFromEnv:
    """Tests for load_from_env function."""

    def test_valid_env_vars_parsed_correctly(self):
        """Parse S3WIRE_* environment variables."""
        env_vars = {
            "S3WIRE_ENDPOINT": "minio.local:9000",
            "S3WIRE_ACCESS_KEY": "env-key",
            "S3WIRE_SECRET_KEY": "env-secret",
            "S3WIRE_SECURE": "false",
            "S3WIRE_MAX_RETRIES": "7",
        }

        with patch.dict(os.environ, {**clean_environ(), **env_vars}, clear=True):
            config = load_from_env()

        assert config.endpoint == "minio.local:9000"
        assert config.access_key == "env-key"
        assert config.secure is False
        assert config.max_retries == 7

    def test_missing_credential_raises_error(self):
        """Raise ConfigError with clear message when a credential is missing."""
        env_vars = {"S3WIRE_ENDPOINT": "minio.local:9000", "S3WIRE_ACCESS_KEY": "k"}

        with patch.dict(os.environ, {**clean_environ(), **env_vars}, clear=True):
            with pytest.raises(ConfigError, match="secret_key.*environment"):
                load_from_env()

    @pytest.mark.parametrize("value", ["1", "yes", "ON", "True"])
    def test_truthy_secure_values(self, value):
        env_vars = {
            "S3WIRE_ENDPOINT": "e",
            "S3WIRE_ACCESS_KEY": "k",
            "S3WIRE_SECRET_KEY": "s",
            "S3WIRE_SECURE": value,
        }

        with patch.dict(os.environ, {**clean_environ(), **env_vars}, clear=True):
            assert load_from_env().secure is True

    def test_invalid_boolean_raises_error(self):
        env_vars = {
            "S3WIRE_ENDPOINT": "e",
            "S3WIRE_ACCESS_KEY": "k",
            "S3WIRE_SECRET_KEY": "s",
            "S3WIRE_SECURE": "maybe",
        }

        with patch.dict(os.environ, {**clean_environ(), **env_vars}, clear=True):
            with pytest.raises(ConfigError, match="Invalid boolean for secure"):
                load_from_env()


class TestLoadConfig:
    """Tests for load_config function."""

    def test_env_vars_take_priority(self, tmp_path: Path):
        """Environment variables take priority over config.json."""
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps({"endpoint": "json.example.com", "access_key": "jk", "secret_key": "js"})
        )
        env_vars = {
            "S3WIRE_ENDPOINT": "env.example.com",
            "S3WIRE_ACCESS_KEY": "ek",
            "S3WIRE_SECRET_KEY": "es",
        }

        with patch.dict(os.environ, {**clean_environ(), **env_vars}, clear=True):
            assert has_env_config() is True
            config = load_config(config_path=str(config_file))

        assert config.endpoint == "env.example.com"

    def test_falls_back_to_config_json(self, tmp_path: Path):
        """Fall back to config.json when no env vars exist."""
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps({"endpoint": "json.example.com", "access_key": "jk", "secret_key": "js"})
        )

        with patch.dict(os.environ, clean_environ(), clear=True):
            config = load_config(config_path=str(config_file))

        assert config.endpoint == "json.example.com"

    def test_raises_error_when_neither_exists(self, tmp_path: Path):
        """Raise ConfigError when no env vars and no config file."""
        with patch.dict(os.environ, clean_environ(), clear=True):
            with pytest.raises(ConfigError, match="No endpoint configured"):
                load_config(config_path=str(tmp_path / "nonexistent.json"))
