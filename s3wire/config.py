"""Configuration loading for the s3wire client.

Supports two configuration sources:
1. Environment variables (for CI/CD and scripts) - takes priority
2. config.json file (for local development)

Environment Variable Format:
    S3WIRE_ENDPOINT=host:port or http(s)://host:port
    S3WIRE_ACCESS_KEY=xxx
    S3WIRE_SECRET_KEY=xxx
    S3WIRE_REGION=us-east-1            (optional)
    S3WIRE_SECURE=true|false           (optional)
    S3WIRE_TIMEOUT=30                  (optional, seconds)
    S3WIRE_CHUNK_SIZE=67108864         (optional, bytes)
    S3WIRE_MAX_PARALLEL=4              (optional)
    S3WIRE_MAX_RETRIES=3               (optional)
    S3WIRE_ADDRESSING_STYLE=path       (optional, path|virtual)

Example:
    S3WIRE_ENDPOINT=http://localhost:9000
    S3WIRE_ACCESS_KEY=minioadmin
    S3WIRE_SECRET_KEY=minioadmin
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

from s3wire.models import Credentials


class ConfigError(Exception):
    """Raised when configuration loading fails."""

    pass


ENV_PREFIX = "S3WIRE_"

# Required fields for a client configuration
REQUIRED_FIELDS = ["endpoint", "access_key", "secret_key"]

DEFAULT_CHUNK_SIZE = 64 * 1024 * 1024
MAX_PARALLEL_LIMIT = 32

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ClientConfig:
    """Connection and transfer settings for one endpoint."""

    endpoint: str
    access_key: str
    secret_key: str
    secure: bool = True
    region: str = "us-east-1"
    timeout: float = 30.0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_parallel: int = 4
    max_retries: int = 3
    retry_delays: tuple[float, ...] = (0.5, 1.0, 2.0)
    addressing_style: str = "path"
    resume_dir: Optional[str] = None

    def __post_init__(self) -> None:
        # An endpoint given as a URL decides the TLS flag
        if "://" in self.endpoint:
            parts = urlsplit(self.endpoint)
            self.secure = parts.scheme == "https"
            self.endpoint = parts.netloc
        self.endpoint = self.endpoint.rstrip("/")

    def validate(self) -> list[str]:
        """Check the settings.

        Returns:
            List of problems; empty when the configuration is usable.
        """
        problems = []
        for name in REQUIRED_FIELDS:
            if not getattr(self, name):
                problems.append(f"{name} is required")
        if self.timeout <= 0:
            problems.append("timeout must be positive")
        if self.chunk_size <= 0:
            problems.append("chunk_size must be positive")
        if not 1 <= self.max_parallel <= MAX_PARALLEL_LIMIT:
            problems.append(f"max_parallel must be between 1 and {MAX_PARALLEL_LIMIT}")
        if self.max_retries < 0:
            problems.append("max_retries must not be negative")
        if self.addressing_style not in ("path", "virtual"):
            problems.append("addressing_style must be 'path' or 'virtual'")
        return problems

    def credentials(self) -> Credentials:
        return Credentials(
            access_key=self.access_key,
            secret_key=self.secret_key,
            region=self.region,
            endpoint=self.endpoint,
            secure=self.secure,
        )


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


def _parse_number(name: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


def _build(data: dict[str, Any], source: str) -> ClientConfig:
    for field_name in REQUIRED_FIELDS:
        if not data.get(field_name):
            raise ConfigError(f"Missing required field '{field_name}' in {source}")

    kwargs: dict[str, Any] = {
        "endpoint": data["endpoint"],
        "access_key": data["access_key"],
        "secret_key": data["secret_key"],
    }
    if data.get("region"):
        kwargs["region"] = data["region"]
    if data.get("addressing_style"):
        kwargs["addressing_style"] = data["addressing_style"]
    if data.get("resume_dir"):
        kwargs["resume_dir"] = data["resume_dir"]
    if data.get("secure") is not None:
        kwargs["secure"] = _parse_bool("secure", data["secure"])
    if data.get("timeout") is not None:
        kwargs["timeout"] = _parse_number("timeout", data["timeout"], float)
    for name in ("chunk_size", "max_parallel", "max_retries"):
        if data.get(name) is not None:
            kwargs[name] = _parse_number(name, data[name], int)
    if data.get("retry_delays") is not None:
        kwargs["retry_delays"] = tuple(
            _parse_number("retry_delays", d, float) for d in data["retry_delays"]
        )

    config = ClientConfig(**kwargs)
    problems = config.validate()
    if problems:
        raise ConfigError(f"Invalid configuration in {source}: {'; '.join(problems)}")
    return config


def load_from_json(config_path: str) -> ClientConfig:
    """Load the client configuration from a JSON file.

    Args:
        config_path: Path to the config.json file.

    Returns:
        The parsed configuration.

    Raises:
        ConfigError: If file doesn't exist, contains invalid JSON,
                    or is missing required fields.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")

    return _build(data, config_path)


def load_from_env() -> ClientConfig:
    """Load the client configuration from S3WIRE_* environment variables.

    Raises:
        ConfigError: If required variables are missing or malformed.
    """
    data = {
        name: os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        for name in (
            "endpoint",
            "access_key",
            "secret_key",
            "region",
            "secure",
            "timeout",
            "chunk_size",
            "max_parallel",
            "max_retries",
            "addressing_style",
            "resume_dir",
        )
    }
    return _build(data, "environment")


def has_env_config() -> bool:
    """Check if an S3WIRE_ENDPOINT environment variable exists."""
    return bool(os.environ.get(f"{ENV_PREFIX}ENDPOINT"))


def load_config(config_path: str = "config.json") -> ClientConfig:
    """Load the client configuration with environment priority.

    Priority order:
    1. Environment variables (if S3WIRE_ENDPOINT is set)
    2. config.json file

    Args:
        config_path: Path to config.json (used as fallback).

    Raises:
        ConfigError: If nothing is configured or the configuration is invalid.
    """
    if has_env_config():
        return load_from_env()
    if Path(config_path).exists():
        return load_from_json(config_path)

    raise ConfigError(
        "No endpoint configured. Set S3WIRE_ENDPOINT, S3WIRE_ACCESS_KEY and "
        "S3WIRE_SECRET_KEY, or create a config.json file."
    )
